"""Running the host tools a build shells out to.

mkfs, mcopy, sfdisk, snap and live-build all go through run_cmd, so every
tool invocation shows up in the log as a single "CMD" line that can be
pasted back into a shell, environment overrides included.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from typing import Mapping, Sequence

logger = logging.getLogger(__name__)

# exit status a shell reports for a program it cannot find
NOT_FOUND = 127
STDERR_TAIL_LINES = 20


class CommandError(RuntimeError):
    """A host tool exited non-zero or could not be started.

    Only the last STDERR_TAIL_LINES of stderr end up in the message; live-build
    in particular writes thousands of lines before it fails.
    """

    def __init__(self, argv: Sequence[str], returncode: int, stderr: str = "") -> None:
        self.argv = list(argv)
        self.returncode = returncode
        self.stderr = stderr
        tail = "\n".join(stderr.rstrip().splitlines()[-STDERR_TAIL_LINES:])
        super().__init__(f"{self.program} failed ({returncode}): {fmt_argv(self.argv)}\n{tail}".rstrip())

    @property
    def program(self) -> str:
        return os.path.basename(self.argv[0]) if self.argv else ""


@dataclass(frozen=True)
class CmdResult:
    argv: list[str]
    returncode: int
    stdout: str
    stderr: str


def fmt_argv(argv: Sequence[str]) -> str:
    return " ".join(shlex.quote(a) for a in argv)


def describe_command(argv: Sequence[str], env: Mapping[str, str] | None = None) -> str:
    """Shell form of argv, prefixed with the variables env adds or overrides."""

    prefix = [f"{k}={shlex.quote(v)}" for k, v in sorted((env or {}).items())]
    return " ".join(prefix + [fmt_argv(argv)])


def run_cmd(
    argv: Sequence[str],
    *,
    env: Mapping[str, str] | None = None,
    cwd: str | None = None,
    input_text: str | None = None,
) -> CmdResult:
    """Run a host tool to completion; a non-zero exit raises CommandError.

    env is layered over the current environment. Output is captured and
    logged at DEBUG one line at a time, tagged with the program name, so a
    debug log interleaves mkfs and sfdisk output with the build steps.
    """

    argv_list = list(argv)
    program = os.path.basename(argv_list[0]) if argv_list else ""
    logger.info("CMD %s%s", describe_command(argv_list, env), f"  (in {cwd})" if cwd else "")

    try:
        p = subprocess.run(
            argv_list,
            input=input_text,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=cwd,
            env=dict(os.environ, **(env or {})),
        )
    except FileNotFoundError as e:
        raise CommandError(argv_list, NOT_FOUND, f"{program}: not found on this host ({e})") from e

    for stream, text in (("stdout", p.stdout), ("stderr", p.stderr)):
        for line in (text or "").splitlines():
            logger.debug("%s %s: %s", program, stream, line)

    if p.returncode != 0:
        raise CommandError(argv_list, p.returncode, p.stderr or "")

    return CmdResult(argv=argv_list, returncode=p.returncode, stdout=p.stdout, stderr=p.stderr)
