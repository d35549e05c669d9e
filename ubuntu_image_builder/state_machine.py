"""Resumable image build state machine.

A build is a fixed, ordered table of named steps. After every step the
checkpoint in the working directory is rewritten, so a later run with
--resume continues with the next step. --until and --thru bound the run by
step name or number.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .errors import BuildError, ImageWriteError, ValidationError
from .gadget import (
    GadgetInfo,
    Role,
    Structure,
    Volume,
    gadget_from_dict,
    gadget_to_dict,
    load_gadget_yaml,
    parse_image_sizes,
)
from .lib.bootloader import BootloaderStager
from .lib.command import CommandError
from .lib.fileutil import DEFAULT_BLOCK_SIZE, copy_path
from .lib.hooks import HOOK_POST_POPULATE_ROOTFS, HOOK_ROOTFS_ENV, run_hooks
from .lib.image_writer import ImageWriter
from .lib.layout import (
    SECTOR_SIZE,
    calculate_image_size,
    calculate_rootfs_size,
    correct_rootfs_size,
    generate_unique_disk_id,
    get_structure_offset,
    iec_size,
    pad_rootfs_size,
    resolve_offsets,
    volume_size,
)
from .lib.mkfs import MkfsRunner
from .lib.ops import SystemOps
from .lib.partition import write_partition_table
from .pipeline import PipelineResult, Step, build_step_table, find_step, lookup_step, resolve_range, run_pipeline
from .state_store import CHECKPOINT_VERSION, checkpoint_path, load_state, new_checkpoint, save_state

logger = logging.getLogger(__name__)

CLOUD_INIT_SEED = "var/lib/cloud/seed/nocloud-net"
CLOUD_INIT_META_DATA = "instance-id: nocloud-static\n"


@dataclass
class CommonOpts:
    image_size: str = ""
    image_file_list: str = ""
    cloud_init: str = ""
    hooks_directories: List[str] = field(default_factory=list)
    disk_info: str = ""
    output_dir: str = "."
    debug: bool = False


@dataclass
class StateMachineOpts:
    workdir: str = ""
    until: str = ""
    thru: str = ""
    resume: bool = False


@dataclass(frozen=True)
class TempDirs:
    root: str

    @property
    def rootfs(self) -> str:
        return os.path.join(self.root, "root")

    @property
    def unpack(self) -> str:
        return os.path.join(self.root, "unpack")

    @property
    def volumes(self) -> str:
        return os.path.join(self.root, "volumes")

    @property
    def scratch(self) -> str:
        return os.path.join(self.root, "scratch")

    @property
    def chroot(self) -> str:
        return os.path.join(self.root, "chroot")

    def all(self) -> Tuple[str, ...]:
        return (self.rootfs, self.unpack, self.volumes, self.scratch)


class StateMachine(ABC):
    """Shared machinery and steps of the snap and classic builds.

    Subclasses set variant and step_names and provide the variant-specific
    steps; every name in step_names must be a method.
    """

    variant = ""
    step_names: Tuple[str, ...] = ()

    def __init__(
        self,
        common: Optional[CommonOpts] = None,
        flags: Optional[StateMachineOpts] = None,
        *,
        ops: Optional[SystemOps] = None,
        mkfs: Optional[MkfsRunner] = None,
    ) -> None:
        self.common = common or CommonOpts()
        self.flags = flags or StateMachineOpts()
        self.ops = ops or SystemOps()
        self.mkfs = mkfs or MkfsRunner(run=self.ops.run)
        self.sector_size = SECTOR_SIZE
        self.block_size = DEFAULT_BLOCK_SIZE
        self.steps: List[Step] = build_step_table(self.step_names, self)

        self.workdir = ""
        self.clean_workdir = False
        self.step_index = 0
        self.gadget_info: Optional[GadgetInfo] = None
        self.rootfs_size = 0
        self.image_sizes: Dict[str, int] = {}
        self.disk_ids: List[bytes] = []
        self.image_files: List[str] = []
        self._ready = False

    # -- paths ---------------------------------------------------------------

    @property
    def temp_dirs(self) -> TempDirs:
        return TempDirs(self.workdir)

    @property
    def gadget_dir(self) -> str:
        return os.path.join(self.temp_dirs.unpack, "gadget")

    @property
    def yaml_file_path(self) -> str:
        return os.path.join(self.gadget_dir, "meta", "gadget.yaml")

    @property
    def is_seeded(self) -> bool:
        return bool(self.gadget_info and self.gadget_info.structures_with_role(Role.SYSTEM_SEED))

    @property
    def writer(self) -> ImageWriter:
        return ImageWriter(
            self.gadget_dir,
            sector_size=self.sector_size,
            block_size=self.block_size,
            ops=self.ops,
            mkfs=self.mkfs,
        )

    @property
    def stager(self) -> BootloaderStager:
        return BootloaderStager(self.temp_dirs.unpack, ops=self.ops)

    def part_image(self, volume_name: str, structure_number: int) -> str:
        return os.path.join(self.temp_dirs.volumes, volume_name, f"part{structure_number}.img")

    def part_dir(self, volume_name: str, structure_number: int) -> str:
        return os.path.join(self.temp_dirs.volumes, volume_name, f"part{structure_number}")

    # -- validation and lifecycle -------------------------------------------

    def validate_input(self) -> None:
        if self.flags.until and self.flags.thru:
            raise ValidationError("cannot specify both --until and --thru")
        if self.flags.resume and not self.flags.workdir:
            raise ValidationError("must specify workdir when using --resume flag")

    def validate_until_thru(self) -> None:
        for value in (self.flags.until, self.flags.thru):
            if value:
                lookup_step(self.steps, value)

    def setup(self) -> None:
        """Validate the flags, then claim the working directory."""

        self.validate_input()
        self.validate_until_thru()

        if self.flags.resume:
            self._load_checkpoint()
        elif self.flags.workdir:
            try:
                os.makedirs(self.flags.workdir, exist_ok=True)
            except OSError as e:
                raise BuildError(f"Error creating workDir: {e}") from e
            self.workdir = os.path.abspath(self.flags.workdir)
        else:
            self.workdir = tempfile.mkdtemp(prefix="ubuntu-image-")
            self.clean_workdir = True
        logger.info("Using workdir %s (temporary=%s)", self.workdir, self.clean_workdir)
        self._ready = True

    def run(self) -> PipelineResult:
        if not self._ready:
            self.setup()

        start = self.step_index + 1
        _, end = resolve_range(self.steps, start=start, until=self.flags.until, thru=self.flags.thru)
        if start > end:
            logger.info("Nothing to run: last completed step is %d, stop is %d", self.step_index, end)
            return PipelineResult(ran_steps=[], last_index=self.step_index)

        try:
            result = run_pipeline(steps=self.steps, start=start, end=end, on_step_done=self._write_checkpoint)
        except Exception:
            logger.error("Build failed at step %d", self.step_index + 1)
            if self.clean_workdir:
                try:
                    self.cleanup()
                except BuildError:
                    logger.exception("Could not remove temporary workdir %s", self.workdir)
            raise

        if result.last_index < len(self.steps):
            logger.info("Stopped after step %d; resume with --resume -w %s", result.last_index, self.workdir)
        return result

    def teardown(self) -> None:
        self.cleanup()

    def cleanup(self) -> None:
        if not self.clean_workdir or not self.workdir:
            return
        try:
            self.ops.files.rmtree(self.workdir)
        except OSError as e:
            raise BuildError(f"Error cleaning up workDir: {e}") from e
        self.clean_workdir = False
        logger.debug("Removed temporary workdir %s", self.workdir)

    # -- checkpoint ----------------------------------------------------------

    def checkpoint(self) -> Dict[str, Any]:
        state = new_checkpoint(
            variant=self.variant,
            workdir=self.workdir,
            flags={"until": self.flags.until, "thru": self.flags.thru, "resume": self.flags.resume},
        )
        state["step_index"] = self.step_index
        state["next_step"] = self.steps[self.step_index].name if self.step_index < len(self.steps) else None
        state["rootfs_size"] = self.rootfs_size
        state["image_sizes"] = dict(self.image_sizes)
        state["disk_ids"] = [d.hex() for d in self.disk_ids]
        state["image_files"] = list(self.image_files)
        state["gadget"] = gadget_to_dict(self.gadget_info) if self.gadget_info else None
        return state

    def _write_checkpoint(self, step: Step) -> None:
        self.step_index = step.index
        save_state(checkpoint_path(self.workdir), self.checkpoint())

    def _load_checkpoint(self) -> None:
        workdir = os.path.abspath(self.flags.workdir)
        path = checkpoint_path(workdir)
        if not os.path.isdir(workdir) or not os.path.exists(path):
            raise ValidationError(f"cannot --resume: no saved state in workdir {workdir}")

        try:
            state = load_state(path)
        except (OSError, ValueError) as e:
            raise BuildError(f"Error reading state file {path}: {e}") from e
        if state.get("variant") != self.variant:
            raise ValidationError(
                f"cannot --resume a {state.get('variant')!r} build as {self.variant!r}"
            )
        if state.get("version") != CHECKPOINT_VERSION:
            raise ValidationError(
                f"cannot --resume: unsupported state file version {state.get('version')!r} in {path}"
            )
        # image_files and staged content are absolute paths below the original workdir
        if state.get("workdir") != workdir:
            raise ValidationError(
                f"cannot --resume: state in {workdir} was written for workdir {state.get('workdir')!r}"
            )
        saved = state.get("flags") or {}
        for key in ("until", "thru"):
            value = saved.get(key)
            if value and find_step(self.steps, str(value)) is None:
                raise ValidationError(
                    f"cannot --resume: saved --{key} {value!r} is not a step of the {self.variant} build"
                )

        self.workdir = workdir
        self.step_index = int(state.get("step_index") or 0)
        self.rootfs_size = int(state.get("rootfs_size") or 0)
        self.image_sizes = {k: int(v) for k, v in (state.get("image_sizes") or {}).items()}
        self.disk_ids = [bytes.fromhex(d) for d in (state.get("disk_ids") or [])]
        self.image_files = list(state.get("image_files") or [])
        gadget = state.get("gadget")
        self.gadget_info = gadget_from_dict(gadget) if gadget else None
        logger.info(
            "Resuming %s build after step %d (previous run: until=%r thru=%r)",
            self.variant,
            self.step_index,
            saved.get("until") or "",
            saved.get("thru") or "",
        )

    # -- helpers -------------------------------------------------------------

    def _require_gadget(self) -> GadgetInfo:
        if self.gadget_info is None:
            raise BuildError("gadget.yaml has not been loaded")
        return self.gadget_info

    def write_cloud_init(self, root: str) -> None:
        if not self.common.cloud_init:
            return
        seed = os.path.join(root, CLOUD_INIT_SEED)
        try:
            os.makedirs(seed, exist_ok=True)
            shutil.copy(self.common.cloud_init, os.path.join(seed, "user-data"))
            with open(os.path.join(seed, "meta-data"), "w", encoding="utf-8") as f:
                f.write(CLOUD_INIT_META_DATA)
        except OSError as e:
            raise BuildError(f"Error writing cloud-init seed: {e}") from e
        logger.info("Wrote cloud-init seed to %s", seed)

    def content_root(self, volume: Volume, structure: Structure, structure_number: int) -> Optional[str]:
        if structure.role is Role.SYSTEM_SEED:
            return self.temp_dirs.rootfs
        if structure.role is Role.SYSTEM_DATA:
            return None if self.is_seeded else self.temp_dirs.rootfs
        part_dir = self.part_dir(volume.name, structure_number)
        return part_dir if os.path.isdir(part_dir) else None

    def _stage_structure_content(self, structure: Structure, part_dir: str) -> None:
        for item in structure.content:
            if not item.source:
                continue
            src = os.path.join(self.gadget_dir, item.source)
            dst = os.path.join(part_dir, item.target.lstrip("/"))
            if (not item.target or item.target.endswith("/")) and not src.endswith("/") and not os.path.isdir(src):
                dst = os.path.join(dst, os.path.basename(src))
            try:
                copy_path(src, dst)
            except OSError as e:
                raise BuildError(f"Error staging {item.source} for structure {structure.name!r}: {e}") from e

    # -- shared steps --------------------------------------------------------

    def make_temporary_directories(self) -> None:
        for d in self.temp_dirs.all():
            try:
                os.makedirs(d, exist_ok=True)
            except OSError as e:
                raise BuildError(f"Error creating temporary directory {d}: {e}") from e

    def load_gadget_yaml(self) -> None:
        try:
            self.gadget_info = load_gadget_yaml(self.yaml_file_path)
        except (OSError, ValueError) as e:
            raise BuildError(f"Error loading gadget.yaml: {e}") from e
        logger.info("Loaded gadget with volumes: %s", ", ".join(self.gadget_info.volumes))

    @abstractmethod
    def populate_rootfs_contents(self) -> None:
        """Fill temp_dirs.rootfs with the root filesystem of the image."""

    def populate_rootfs_contents_hooks(self) -> None:
        if not self.common.hooks_directories:
            logger.debug("No hooks directories configured")
            return
        run_hooks(
            self.common.hooks_directories,
            HOOK_POST_POPULATE_ROOTFS,
            HOOK_ROOTFS_ENV,
            os.path.abspath(self.temp_dirs.rootfs),
            ops=self.ops,
        )

    def generate_disk_info(self) -> None:
        if not self.common.disk_info:
            return
        disk_dir = os.path.join(self.temp_dirs.rootfs, ".disk")
        try:
            os.makedirs(disk_dir, exist_ok=True)
            shutil.copy(self.common.disk_info, os.path.join(disk_dir, "info"))
        except OSError as e:
            raise BuildError(f"Error copying disk info: {e}") from e

    def calculate_rootfs_size(self) -> None:
        gadget = self._require_gadget()
        try:
            measured = calculate_rootfs_size(self.temp_dirs.rootfs)
        except OSError as e:
            raise BuildError(f"Error measuring rootfs: {e}") from e
        self.rootfs_size = pad_rootfs_size(measured)
        logger.info("Rootfs contents %s, target size %s", iec_size(measured), iec_size(self.rootfs_size))

        if self.is_seeded:
            return
        for structure in gadget.structures_with_role(Role.SYSTEM_DATA):
            warning = correct_rootfs_size(structure, self.rootfs_size)
            if warning:
                print(warning)
                logger.warning(warning)

    def resolve_layout(self) -> None:
        gadget = self._require_gadget()
        try:
            requested = parse_image_sizes(self.common.image_size, list(gadget.volumes))
        except ValueError as e:
            raise BuildError(f"Error parsing --image-size: {e}") from e

        self.image_sizes = {}
        for name, volume in gadget.volumes.items():
            resolve_offsets(volume)
            size = volume_size(volume, self.sector_size)
            wanted = requested.get(name)
            if wanted is not None:
                if wanted < size:
                    logger.warning(
                        "Requested size %s for volume %s is smaller than the minimum %s; ignoring --image-size",
                        iec_size(wanted),
                        name,
                        iec_size(size),
                    )
                else:
                    size = wanted
            self.image_sizes[name] = size
        logger.info("Calculated image size: %s", iec_size(calculate_image_size(gadget, self.sector_size)))

    def populate_bootfs_contents(self) -> None:
        gadget = self._require_gadget()
        for name, volume in gadget.volumes.items():
            boot_target = self.temp_dirs.rootfs
            for ii, structure in enumerate(volume.structures):
                if not structure.has_filesystem or structure.role in {Role.SYSTEM_DATA, Role.SYSTEM_SEED}:
                    continue
                part_dir = self.part_dir(name, ii)
                try:
                    os.makedirs(part_dir, exist_ok=True)
                except OSError as e:
                    raise BuildError(f"Error creating structure dir {part_dir}: {e}") from e
                self._stage_structure_content(structure, part_dir)
                if structure.role is Role.SYSTEM_BOOT:
                    boot_target = part_dir
            self.stager.handle_secure_boot(volume, boot_target)

    def populate_prepare_partitions(self) -> None:
        gadget = self._require_gadget()
        writer = self.writer
        grew = False
        for name, volume in gadget.volumes.items():
            try:
                os.makedirs(os.path.join(self.temp_dirs.volumes, name), exist_ok=True)
            except OSError as e:
                raise BuildError(f"Error creating volume dir: {e}") from e
            for ii, structure in enumerate(volume.structures):
                root = self.content_root(volume, structure, ii)
                warning = writer.copy_structure_content(
                    volume,
                    structure,
                    ii,
                    root,
                    self.part_image(name, ii),
                    rootfs_size=self.rootfs_size if root == self.temp_dirs.rootfs else 0,
                )
                grew = grew or warning is not None
        if grew:
            # a structure grew after layout; place everything again
            self.resolve_layout()

    def make_disk(self) -> None:
        gadget = self._require_gadget()
        output_dir = self.common.output_dir or "."
        try:
            os.makedirs(output_dir, exist_ok=True)
        except OSError as e:
            raise BuildError(f"Error creating output dir: {e}") from e

        files = self.ops.files
        writer = self.writer
        self.image_files = []
        for name, volume in gadget.volumes.items():
            image = os.path.join(output_dir, f"{name}.img")
            try:
                files.zero_fill(image, self.image_sizes[name])
            except (KeyError, OSError, ValueError) as e:
                raise ImageWriteError(f"Error creating disk image {image}: {e}") from e

            if any(s.is_partition for s in volume.structures):
                try:
                    write_partition_table(volume, image, sector_size=self.sector_size, run=self.ops.run)
                except (CommandError, OSError) as e:
                    raise BuildError(f"Error partitioning image {image}: {e}") from e

            for ii, structure in enumerate(volume.structures):
                part = self.part_image(name, ii)
                if not os.path.exists(part):
                    continue
                try:
                    files.copy_blob(part, image, seek=get_structure_offset(structure), block_size=self.block_size)
                except (OSError, ValueError) as e:
                    raise ImageWriteError(f"Error copying structure {structure.name!r} into {image}: {e}") from e

            writer.write_offset_values(volume, image, self.sector_size)
            if volume.schema == "mbr":
                disk_id = generate_unique_disk_id(self.disk_ids, self.ops.random)
                writer.write_disk_id(image, disk_id)
                logger.info("Disk ID of %s: 0x%s", image, disk_id[::-1].hex())

            self.image_files.append(os.path.abspath(image))
            logger.info("Created %s (%s)", image, iec_size(self.image_sizes[name]))

    def finish(self) -> None:
        if self.common.image_file_list:
            try:
                with open(self.common.image_file_list, "w", encoding="utf-8") as f:
                    f.write("".join(f"{p}\n" for p in self.image_files))
            except OSError as e:
                raise BuildError(f"Error writing image file list: {e}") from e
        logger.info("Build finished: %s", ", ".join(self.image_files) or "no images")
