"""Registry of which source file each converted output belongs to.

Two sources that differ only in extension (``movie.mkv`` and ``movie.avi``)
mirror to the same output path. The registry hands every source its own
destination and remembers the assignment in a small JSON ledger kept in each
output directory, so the mapping survives restarts and deleted originals.
"""

import json
import logging
import os
import threading
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence

LEDGER_NAME = ".videoconverter-outputs.json"


class OutputRegistry:
    """Thread-safe destination → source map, persisted per output directory.

    A destination is handed to a source only when it is unassigned and not
    already on disk, or when it was assigned to that same source before.
    Anything else gets an alternative name next to it.
    """

    def __init__(self, output_dirs: Sequence[Path]):
        self.output_dirs: List[Path] = sorted(
            (Path(os.path.abspath(d)) for d in output_dirs), key=lambda d: len(d.parts), reverse=True
        )
        self._owners: Dict[Path, Path] = {}
        self._lock = threading.Lock()
        self._logger = logging.getLogger(__name__)
        for out_dir in self.output_dirs:
            self._load(out_dir)

    def owner(self, destination: Path) -> Optional[Path]:
        """Returns the source a destination was assigned to, if any."""
        with self._lock:
            return self._owners.get(Path(os.path.abspath(destination)))

    def claim(self, source: Path, preferred: Path) -> Path:
        """Assigns a destination to `source`, starting from `preferred`.

        Args:
            source: Absolute path of the file to be converted.
            preferred: The mirrored output path.

        Returns:
            `preferred` when it is free or already belongs to `source`,
            otherwise the first free alternative (``movie.mkv.mp4``,
            ``movie (1).mp4``, ``movie (2).mp4``, ...).
        """
        source = Path(os.path.abspath(source))
        preferred = Path(os.path.abspath(preferred))
        with self._lock:
            for candidate in self._candidates(source, preferred):
                owner = self._owners.get(candidate)
                if owner == source:
                    return candidate
                if owner is None and not candidate.exists():
                    self._owners[candidate] = source
                    self._save(candidate)
                    if candidate != preferred:
                        self._logger.warning(
                            f"OUTPUT_CLASH: {preferred.name} belongs to another source; "
                            f"{source.name} will be written to {candidate.name}"
                        )
                    return candidate
        raise RuntimeError(f"No free output name for {source}")

    @staticmethod
    def _candidates(source: Path, preferred: Path, limit: int = 1000) -> Iterator[Path]:
        ext = preferred.suffix
        yield preferred
        yield preferred.with_name(f"{source.name}{ext}")
        for n in range(1, limit):
            yield preferred.with_name(f"{preferred.stem} ({n}){ext}")

    # ── persistence ──────────────────────────────────────────────────────────

    def _ledger_dir(self, destination: Path) -> Optional[Path]:
        for out_dir in self.output_dirs:
            if destination == out_dir or out_dir in destination.parents:
                return out_dir
        return None

    def _load(self, out_dir: Path) -> None:
        ledger = out_dir / LEDGER_NAME
        try:
            with open(ledger, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return
        except (OSError, ValueError) as e:
            self._logger.warning(f"Ignoring unreadable output ledger {ledger}: {e}")
            return
        if not isinstance(data, dict):
            self._logger.warning(f"Ignoring malformed output ledger {ledger}")
            return
        for relative, source in data.items():
            self._owners[out_dir / relative] = Path(source)
        self._logger.debug(f"Loaded {len(data)} output assignment(s) from {ledger}")

    def _save(self, destination: Path) -> None:
        """Rewrites the ledger of the output directory holding `destination`."""
        out_dir = self._ledger_dir(destination)
        if out_dir is None:
            return
        entries = {
            str(dest.relative_to(out_dir)): str(src)
            for dest, src in self._owners.items()
            if self._ledger_dir(dest) == out_dir
        }
        ledger = out_dir / LEDGER_NAME
        tmp = ledger.with_name(ledger.name + ".tmp")
        try:
            out_dir.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(entries, f, indent=2, sort_keys=True)
            os.replace(tmp, ledger)
        except OSError as e:
            # The in-memory assignment still holds for this run
            self._logger.warning(f"Could not write output ledger {ledger}: {e}")
