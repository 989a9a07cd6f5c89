"""Record/replay: the tape, its recorder and replayer, and repro bundles."""
from __future__ import annotations

__all__ = [
    "Recorder",
    "Replayer",
    "ReplayReport",
    "TapeReader",
    "read_tape",
    "export_bundle",
    "extract_bundle",
    "read_bundle",
    "run_bundle",
]

from conduit.repro.bundle import export_bundle, extract_bundle, read_bundle, run_bundle
from conduit.repro.recorder import Recorder
from conduit.repro.replayer import ReplayReport, Replayer
from conduit.repro.tape import TapeReader, read_tape
