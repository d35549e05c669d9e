from __future__ import annotations

import argparse
import logging
from typing import Optional

from .build_config import BuildConfig, load_build_config
from .classic import ClassicOpts, ClassicStateMachine
from .errors import BuildError
from .lib.command import CommandError
from .logging_utils import configure_logging
from .snap import SnapOpts, SnapStateMachine
from .state_machine import CommonOpts, StateMachine, StateMachineOpts

logger = logging.getLogger(__name__)


def _add_common_flags(p: argparse.ArgumentParser) -> None:
    p.add_argument("-i", "--image-size", default=None, help="Suggested image size: <size> or <volume>:<size>[,...]")
    p.add_argument("--image-file-list", default=None, help="Write the paths of the created images to this file")
    p.add_argument("--cloud-init", default=None, help="cloud-config data to be copied to the image")
    p.add_argument(
        "--hooks-directory",
        default=None,
        help="Comma-separated directories holding build-time hook scripts",
    )
    p.add_argument("--disk-info", default=None, help="File to be used as .disk/info on the rootfs")
    p.add_argument("-O", "--output-dir", default=None, help="Directory for the <volume>.img files")
    p.add_argument("-d", "--debug", action="store_true", help="Enable debugging output")
    p.add_argument("--log", default=None, help="Also write the log to this file")
    p.add_argument("--config", default=None, help="YAML file with defaults for the options above")

    p.add_argument("-w", "--workdir", default=None, help="Working directory; kept after the run, needed for --resume")
    p.add_argument("-u", "--until", default="", help="Run until STEP (name or number), non-inclusively")
    p.add_argument("-t", "--thru", default="", help="Run through STEP (name or number), inclusively")
    p.add_argument("-r", "--resume", action="store_true", help="Continue from the saved state in --workdir")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="ubuntu-image", description="Generate a bootable disk image.")
    sub = p.add_subparsers(dest="command", required=True)

    snap = sub.add_parser("snap", help="Create snap-based Ubuntu Core image")
    snap.add_argument("model_assertion")
    snap.add_argument("--snap", action="append", default=[], help="Extra snap, <snap>[=<channel>]; repeatable")
    snap.add_argument("-c", "--channel", default="", help="Default snap channel")
    snap.add_argument("--disable-console-conf", action="store_true", help="Disable console-conf on the image")
    _add_common_flags(snap)

    classic = sub.add_parser("classic", help="Create debian-based Ubuntu Classic image")
    classic.add_argument("gadget_tree")
    classic.add_argument("-p", "--project", default="", help="livecd-rootfs project; exclusive with --filesystem")
    classic.add_argument("-f", "--filesystem", default="", help="Unpacked filesystem for the system partition")
    classic.add_argument("-s", "--suite", default="", help="Distribution series for livecd-rootfs")
    classic.add_argument("-a", "--arch", default="", help="CPU architecture (default: builder arch)")
    classic.add_argument("--subproject", default="", help="livecd-rootfs sub project")
    classic.add_argument("--subarch", default="", help="livecd-rootfs sub architecture")
    classic.add_argument("--extra-ppas", default="", help="Extra PPAs to install")
    classic.add_argument("--with-proposed", action="store_true", help="Enable the proposed pocket")
    classic.add_argument(
        "--extra-packages", default="", help="Comma-separated packages to apt install into --filesystem"
    )
    _add_common_flags(classic)

    return p


def _pick(cli: Optional[str], default: str) -> str:
    return cli if cli is not None else default


def common_opts(args: argparse.Namespace, cfg: BuildConfig) -> CommonOpts:
    hooks = args.hooks_directory
    return CommonOpts(
        image_size=_pick(args.image_size, cfg.image_size),
        image_file_list=_pick(args.image_file_list, cfg.image_file_list),
        cloud_init=_pick(args.cloud_init, cfg.cloud_init),
        hooks_directories=[h for h in hooks.split(",") if h] if hooks is not None else cfg.hooks_directories,
        disk_info=_pick(args.disk_info, cfg.disk_info),
        output_dir=_pick(args.output_dir, cfg.output_dir) or ".",
        debug=bool(args.debug),
    )


def make_state_machine(args: argparse.Namespace, cfg: BuildConfig) -> StateMachine:
    common = common_opts(args, cfg)
    flags = StateMachineOpts(
        workdir=_pick(args.workdir, cfg.workdir),
        until=args.until,
        thru=args.thru,
        resume=bool(args.resume),
    )
    if args.command == "snap":
        opts = SnapOpts(
            model_assertion=args.model_assertion,
            snaps=list(args.snap),
            channel=args.channel,
            disable_console_conf=bool(args.disable_console_conf),
        )
        return SnapStateMachine(opts, common, flags)

    opts = ClassicOpts(
        gadget_tree=args.gadget_tree,
        project=args.project,
        filesystem=args.filesystem,
        suite=args.suite,
        arch=args.arch,
        subproject=args.subproject,
        subarch=args.subarch,
        extra_ppas=args.extra_ppas,
        with_proposed=bool(args.with_proposed),
        extra_packages=[p for p in args.extra_packages.split(",") if p],
    )
    return ClassicStateMachine(opts, common, flags)


def run(args: argparse.Namespace) -> None:
    cfg = load_build_config(args.config) if args.config else BuildConfig(raw={})
    configure_logging(
        log_path=args.log or cfg.log or None,
        level=logging.DEBUG if args.debug else logging.INFO,
    )

    sm = make_state_machine(args, cfg)
    sm.setup()
    try:
        sm.run()
    finally:
        sm.teardown()


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        run(args)
    except (BuildError, CommandError, OSError, ValueError) as e:
        logger.error("%s", e)
        logger.debug("Traceback", exc_info=True)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
