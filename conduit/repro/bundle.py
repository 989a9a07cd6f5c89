"""Repro bundle codec: package a data directory for deterministic replay.

A bundle is a zip archive with a fixed set of members:

    meta.json         content-derived metadata and sha256 digests
    tape.jsonl        the tape (scrubbed in shareable mode)
    conduit.db        byte copy of the session store (never scrubbed)
    workspace.patch   optional ``git diff HEAD`` of the workspace

Archives are deterministic: members are sorted, timestamps and
permissions are fixed, and meta.json carries no wall-clock or host
fields. Exporting the result of an extract yields identical bytes.

Extraction lays files out exactly as a live data directory has them:

    <dir>/conduit.db
    <dir>/repro/tape.jsonl
    <dir>/repro/meta.json
    <dir>/repro/workspace.patch
"""
from __future__ import annotations

import hashlib
import io
import json
import logging
import shutil
import subprocess
import tempfile
import zipfile
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ..engine.errors import BundleIntegrityError
from ..shared.services.durable_write import atomic_write_bytes, atomic_write_many
from .scrub import scrub_value
from .tape import TapeHeader, complete_bytes, encode_line

if TYPE_CHECKING:
    from ..engine.orchestrator import Orchestrator
    from ..engine.yaml_config import AgentConfig
    from .replayer import ReplayReport

logger = logging.getLogger(__name__)

BUNDLE_VERSION = 1
MODE_FULL = "full"
MODE_SHAREABLE = "shareable"

META_NAME = "meta.json"
TAPE_NAME = "tape.jsonl"
STORAGE_NAME = "conduit.db"
PATCH_NAME = "workspace.patch"
_MEMBERS = (META_NAME, TAPE_NAME, STORAGE_NAME, PATCH_NAME)

# Where each member lands relative to the data directory.
_LAYOUT = {
    STORAGE_NAME: Path("conduit.db"),
    TAPE_NAME: Path("repro") / "tape.jsonl",
    META_NAME: Path("repro") / "meta.json",
    PATCH_NAME: Path("repro") / "workspace.patch",
}

_ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)

STORAGE_NOTE = (
    "conduit.db is a byte copy of the session store and is NOT scrubbed; "
    "do not treat shareable bundles as sanitized."
)


@dataclass
class BundleMeta:
    """Contents of meta.json."""
    bundle_version: int = BUNDLE_VERSION
    mode: str = MODE_FULL
    tape_schema_version: int | None = None
    tape_started_at: str | None = None
    tape_entries: int = 0
    files: dict[str, dict[str, Any]] = field(default_factory=dict)
    scrubbed: bool = False
    storage_scrubbed: bool = False
    note: str = STORAGE_NOTE

    def to_dict(self) -> dict[str, Any]:
        return {
            "bundle_version": self.bundle_version,
            "mode": self.mode,
            "tape_schema_version": self.tape_schema_version,
            "tape_started_at": self.tape_started_at,
            "tape_entries": self.tape_entries,
            "files": self.files,
            "scrubbed": self.scrubbed,
            "storage_scrubbed": self.storage_scrubbed,
            "note": self.note,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BundleMeta:
        return cls(
            bundle_version=data.get("bundle_version", BUNDLE_VERSION),
            mode=data.get("mode", MODE_FULL),
            tape_schema_version=data.get("tape_schema_version"),
            tape_started_at=data.get("tape_started_at"),
            tape_entries=data.get("tape_entries", 0),
            files=data.get("files") or {},
            scrubbed=data.get("scrubbed", False),
            storage_scrubbed=data.get("storage_scrubbed", False),
            note=data.get("note", STORAGE_NOTE),
        )

    def encode(self) -> bytes:
        return (json.dumps(self.to_dict(), indent=2, sort_keys=True) + "\n").encode("utf-8")


@dataclass
class ExportResult:
    """Result of a bundle export."""
    archive_path: Path
    meta: BundleMeta
    members: list[str] = field(default_factory=list)


@dataclass
class ExtractResult:
    """Result of a bundle extract."""
    data_dir: Path
    meta: BundleMeta
    files: list[Path] = field(default_factory=list)


def _sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def capture_workspace_patch(workspace: Path) -> bytes | None:
    """``git diff HEAD`` of ``workspace``, or None if unavailable/empty."""
    try:
        diff = subprocess.run(
            ["git", "diff", "HEAD", "--binary"],
            cwd=str(workspace),
            capture_output=True,
            timeout=10,
        )
    except (subprocess.TimeoutExpired, FileNotFoundError):
        logger.debug("Failed to capture git diff for %s", workspace)
        return None
    if diff.returncode != 0 or not diff.stdout:
        return None
    return diff.stdout


def _scrub_tape(tape: bytes) -> tuple[bytes, int]:
    """Scrub every entry's payload strings. Returns (tape, scrubbed_lines)."""
    out = bytearray()
    changed = 0
    for line_no, raw in enumerate(tape.splitlines(keepends=True), start=1):
        if line_no == 1 or not raw.strip():
            out += raw
            continue
        try:
            record = json.loads(raw)
        except ValueError:
            # Unreadable lines are kept verbatim so replay reports the
            # same corruption the source tape has.
            out += raw
            continue
        if not isinstance(record, dict) or "payload" not in record:
            out += raw
            continue
        scrubbed = dict(record)
        scrubbed["payload"] = scrub_value(record["payload"])
        encoded = encode_line(scrubbed)
        if scrubbed["payload"] != record["payload"]:
            changed += 1
        out += encoded
    return bytes(out), changed


def _tape_summary(tape: bytes) -> tuple[TapeHeader | None, int]:
    lines = [ln for ln in tape.split(b"\n") if ln.strip()]
    if not lines:
        return None, 0
    try:
        header = TapeHeader.from_dict(json.loads(lines[0]))
    except ValueError:
        return None, len(lines)
    return header, len(lines) - 1


def _zip_bytes(members: dict[str, bytes]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name in sorted(members):
            info = zipfile.ZipInfo(name, date_time=_ZIP_EPOCH)
            info.compress_type = zipfile.ZIP_DEFLATED
            info.create_system = 3
            info.external_attr = 0o644 << 16
            zf.writestr(info, members[name])
    return buf.getvalue()


def export_bundle(
    data_dir: str | Path,
    output_path: str | Path,
    mode: str = MODE_FULL,
    workspace: str | Path | None = None,
) -> ExportResult:
    """Package ``data_dir`` into a repro bundle.

    The storage file is copied as-is; the caller must make sure nothing
    is writing to it. In shareable mode only the tape is scrubbed.
    """
    if mode not in (MODE_FULL, MODE_SHAREABLE):
        raise ValueError(f"unknown bundle mode {mode!r}")
    data_dir = Path(data_dir)
    output_path = Path(output_path)
    members: dict[str, bytes] = {}
    meta = BundleMeta(mode=mode)

    tape_path = data_dir / _LAYOUT[TAPE_NAME]
    if tape_path.exists():
        tape = complete_bytes(tape_path)
        if mode == MODE_SHAREABLE:
            tape, changed = _scrub_tape(tape)
            meta.scrubbed = True
            logger.info("Scrubbed %d tape entries for shareable export", changed)
        header, entries = _tape_summary(tape)
        if header is not None:
            meta.tape_schema_version = header.schema_version
            meta.tape_started_at = header.started_at
        meta.tape_entries = entries
        members[TAPE_NAME] = tape
    else:
        logger.info("No tape at %s; exporting storage only", tape_path)

    storage_path = data_dir / _LAYOUT[STORAGE_NAME]
    if storage_path.exists():
        members[STORAGE_NAME] = storage_path.read_bytes()

    patch: bytes | None = None
    if workspace is not None:
        patch = capture_workspace_patch(Path(workspace))
    if patch is None and (data_dir / _LAYOUT[PATCH_NAME]).exists():
        patch = (data_dir / _LAYOUT[PATCH_NAME]).read_bytes()
    if patch:
        members[PATCH_NAME] = patch

    meta.files = {
        name: {"sha256": _sha256(data), "size": len(data)}
        for name, data in sorted(members.items())
    }
    members[META_NAME] = meta.encode()

    atomic_write_bytes(output_path, _zip_bytes(members))
    logger.info(
        "Exported repro bundle %s (mode=%s, entries=%d, members=%s)",
        output_path, mode, meta.tape_entries, ", ".join(sorted(members)),
    )
    return ExportResult(
        archive_path=output_path, meta=meta, members=sorted(members),
    )


def read_bundle(bundle_path: str | Path) -> tuple[BundleMeta, dict[str, bytes]]:
    """Load and fully validate a bundle in memory.

    Raises BundleIntegrityError on any problem; nothing is written.
    """
    bundle_path = Path(bundle_path)
    label = str(bundle_path)
    try:
        with zipfile.ZipFile(bundle_path) as zf:
            names = zf.namelist()
            if len(names) != len(set(names)):
                raise BundleIntegrityError(label, "duplicate archive members")
            unexpected = sorted(set(names) - set(_MEMBERS))
            if unexpected:
                raise BundleIntegrityError(
                    label, f"unexpected members: {', '.join(unexpected)}",
                )
            bad = zf.testzip()
            if bad is not None:
                raise BundleIntegrityError(label, f"CRC mismatch in {bad}")
            members = {name: zf.read(name) for name in names}
    except FileNotFoundError:
        raise
    except zipfile.BadZipFile as exc:
        raise BundleIntegrityError(label, f"not a zip archive: {exc}") from exc
    except (OSError, EOFError, zipfile.LargeZipFile, RuntimeError) as exc:
        raise BundleIntegrityError(label, str(exc)) from exc

    if META_NAME not in members:
        raise BundleIntegrityError(label, "meta.json missing")
    try:
        meta_raw = json.loads(members[META_NAME])
    except ValueError as exc:
        raise BundleIntegrityError(label, f"meta.json unreadable: {exc}") from exc
    if not isinstance(meta_raw, dict):
        raise BundleIntegrityError(label, "meta.json is not an object")
    meta = BundleMeta.from_dict(meta_raw)
    if meta.bundle_version != BUNDLE_VERSION:
        raise BundleIntegrityError(
            label, f"unsupported bundle_version {meta.bundle_version}",
        )
    if meta.mode not in (MODE_FULL, MODE_SHAREABLE):
        raise BundleIntegrityError(label, f"unknown mode {meta.mode!r}")

    for name in members:
        if name == META_NAME:
            continue
        expected = meta.files.get(name)
        if not expected:
            raise BundleIntegrityError(label, f"{name} not listed in meta.json")
        if expected.get("sha256") != _sha256(members[name]):
            raise BundleIntegrityError(label, f"{name} digest mismatch")
    for name in meta.files:
        if name not in members:
            raise BundleIntegrityError(label, f"{name} listed in meta.json but missing")

    if TAPE_NAME in members:
        header, _entries = _tape_summary(members[TAPE_NAME])
        if header is None:
            raise BundleIntegrityError(label, "tape header unreadable")

    return meta, members


def extract_bundle(
    bundle_path: str | Path,
    target_dir: str | Path,
    overwrite: bool = False,
) -> ExtractResult:
    """Materialize a bundle as a data directory.

    The whole archive is validated before the first file is written.
    Existing files are only replaced when ``overwrite`` is set.
    """
    meta, members = read_bundle(bundle_path)
    target_dir = Path(target_dir)

    destinations = {name: target_dir / _LAYOUT[name] for name in members}
    if not overwrite:
        existing = [str(p) for p in destinations.values() if p.exists()]
        if existing:
            raise FileExistsError(
                f"Refusing to overwrite existing files: {', '.join(sorted(existing))}"
            )

    written = [destinations[name] for name in sorted(members)]
    atomic_write_many({destinations[name]: members[name] for name in sorted(members)})
    logger.info(
        "Extracted repro bundle %s into %s (%d files)",
        bundle_path, target_dir, len(written),
    )
    return ExtractResult(data_dir=target_dir, meta=meta, files=written)


async def run_bundle(
    source: str | Path,
    *,
    speed: float = 1.0,
    continue_live: bool = False,
    on_loaded: Callable[[Orchestrator], Awaitable[None] | None] | None = None,
    after_replay: Callable[[Orchestrator, ReplayReport], Awaitable[None]] | None = None,
    agent_configs: dict[str, AgentConfig] | None = None,
) -> ReplayReport:
    """Replay a bundle (or an already-extracted data directory).

    An archive is extracted into a temporary directory that is removed
    on return. A directory is used in place and kept. ``on_loaded`` is
    called after replay sessions exist and before the first entry is
    fed, so callers can subscribe. ``after_replay`` runs once the tape
    is drained and before the orchestrator is shut down; after a
    continue-live handoff it is what keeps the live sessions reachable.
    """
    from ..engine.adapters.registry import build_adapter_registry
    from ..engine.config import EngineConfig
    from ..engine.models import ReproMode
    from ..engine.orchestrator import Orchestrator
    from .replayer import Replayer

    source = Path(source)
    ephemeral: Path | None = None
    if source.is_dir():
        data_dir = source
    else:
        # Validate before creating anything on disk.
        read_bundle(source)
        ephemeral = Path(tempfile.mkdtemp(prefix="conduit-repro-"))
        data_dir = ephemeral

    try:
        if ephemeral is not None:
            extract_bundle(source, data_dir)
        config = EngineConfig(
            data_dir=str(data_dir),
            repro_mode=ReproMode.REPLAY_THEN_LIVE if continue_live else ReproMode.REPLAY,
            replay_speed=speed,
        )
        orchestrator = Orchestrator.build(config, build_adapter_registry(agent_configs))
        try:
            replayer = Replayer(orchestrator, config.tape_path, speed=speed,
                                continue_live=continue_live)
            replayer.load()
            if on_loaded is not None:
                result = on_loaded(orchestrator)
                if result is not None:
                    await result
            report = await replayer.run()
            if after_replay is not None:
                await after_replay(orchestrator, report)
            return report
        finally:
            await orchestrator.shutdown()
    finally:
        if ephemeral is not None:
            shutil.rmtree(ephemeral, ignore_errors=True)
            logger.debug("Removed temporary replay directory %s", ephemeral)
