from __future__ import annotations

import logging
import platform
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

QEMU_STATIC_BY_ARCH = {
    "armhf": "qemu-arm-static",
    "arm64": "qemu-aarch64-static",
    "ppc64el": "qemu-ppc64le-static",
}


def normalize_arch(machine: str) -> str:
    m = machine.lower()
    return {
        "x86_64": "amd64",
        "amd64": "amd64",
        "aarch64": "arm64",
        "arm64": "arm64",
        "armv7l": "armhf",
        "armv6l": "armhf",
        "ppc64le": "ppc64el",
        "s390x": "s390x",
        "riscv64": "riscv64",
    }.get(m, m)


def get_host_arch() -> str:
    return normalize_arch(platform.machine())


def _read_os_release(path: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    try:
        text = Path(path).read_text(encoding="utf-8", errors="ignore")
    except OSError:
        return out
    for line in text.splitlines():
        key, sep, value = line.partition("=")
        if sep:
            out[key.strip()] = value.strip().strip('"')
    return out


def get_host_suite(os_release: str = "/etc/os-release") -> str:
    """Codename of the running distribution ("" if it cannot be told)."""

    info = _read_os_release(os_release)
    return info.get("UBUNTU_CODENAME") or info.get("VERSION_CODENAME") or ""


def get_qemu_static_for_arch(arch: str) -> str:
    return QEMU_STATIC_BY_ARCH.get(arch, "")


def parse_ppas(value: str) -> List[str]:
    return [p for p in value.replace(",", " ").split() if p]


def create_ppa_info(ppa_name: str, series: str, auth: Optional[str] = None) -> Tuple[str, str]:
    """Return (sources.list.d file name, contents) for a Launchpad PPA."""

    user, _, ppa = ppa_name.partition("/")
    file_name = f"{user}-ubuntu-{ppa}-{series}.list"
    if auth:
        base = f"https://{auth}@private-ppa.launchpadcontent.net"
    else:
        base = "https://ppa.launchpadcontent.net"
    return file_name, f"deb {base}/{ppa_name}/ubuntu {series} main"


def live_build_env(
    *,
    project: str,
    suite: str,
    arch: str,
    subproject: str = "",
    subarch: str = "",
    extra_ppas: str = "",
    with_proposed: bool = False,
    host_arch: Optional[str] = None,
) -> Dict[str, str]:
    """Environment for livecd-rootfs' lb config / lb build."""

    env = {
        "PROJECT": project,
        "SUITE": suite,
        "ARCH": arch,
        "IMAGEFORMAT": "none",
    }
    if subproject:
        env["SUBPROJECT"] = subproject
    if subarch:
        env["SUBARCH"] = subarch
    if extra_ppas:
        env["EXTRA_PPAS"] = " ".join(parse_ppas(extra_ppas))
    if with_proposed:
        env["PROPOSED"] = "1"

    host_arch = host_arch or get_host_arch()
    if arch != host_arch:
        qemu = get_qemu_static_for_arch(arch)
        if qemu:
            env["LB_BOOTSTRAP_QEMU_ARCH"] = arch
            env["LB_BOOTSTRAP_QEMU_STATIC"] = f"/usr/bin/{qemu}"
        else:
            logger.warning("No qemu-user-static known for %s; foreign build may fail", arch)
    return env


LIVE_BUILD_COMMANDS = (
    ["lb", "clean", "--purge"],
    ["lb", "config"],
    ["lb", "build"],
)


def germinate_argv(
    *,
    mirror: str,
    arch: str,
    suite: str,
    seed_urls: Sequence[str],
    seed_branch: str,
    components: Sequence[str] = (),
    flavor: str = "ubuntu",
) -> List[str]:
    """germinate command line that expands a seed into its package list.

    Run from a scratch directory; germinate writes its output files there.
    """

    argv = [
        "germinate",
        "--mirror",
        mirror,
        "--arch",
        arch,
        "--dist",
        suite,
        "--seed-source",
        ",".join(seed_urls),
        "--seed-dist",
        f"{flavor}.{seed_branch}",
        "--no-rdepends",
    ]
    if components:
        argv.append("--components=" + ",".join(components))
    return argv


def apt_install_argv(target_dir: str, packages: Sequence[str]) -> List[str]:
    return ["chroot", target_dir, "apt", "install", "-y", *packages]
