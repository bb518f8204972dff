"""File matching for assets whose backing file is missing.

This module maps an asset with no resolvable file to the most likely
candidate among the scanned files, using an ordered cascade of strategies
from exact filename matches down to a bounded fuzzy match. Each result
carries a confidence score; only the fuzzy strategy is gated by a minimum
confidence.
"""

from __future__ import annotations

import difflib
import logging
import posixpath
import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Literal

from asset_migrate.models import AssetRecord, FileRecord

logger = logging.getLogger(__name__)

MatchStrategy = Literal[
    "exact_same_volume",
    "exact",
    "case_insensitive",
    "normalized",
    "extension_family",
    "size_similarity",
    "fuzzy",
]

STRATEGY_CONFIDENCE: dict[str, float] = {
    "exact_same_volume": 1.0,
    "exact": 0.95,
    "case_insensitive": 0.85,
    "normalized": 0.75,
    "extension_family": 0.70,
    "size_similarity": 0.60,
}

DEFAULT_MIN_CONFIDENCE = 0.70
SIMILARITY_THRESHOLD = 0.5
MAX_EDIT_DISTANCE = 5
MAX_PREFIX_DISTANCE = 2
LENGTH_TOLERANCE = 0.3

EXTENSION_FAMILIES: list[set[str]] = [
    {"jpg", "jpeg", "jpe"},
    {"tif", "tiff"},
    {"htm", "html"},
    {"mpg", "mpeg"},
    {"mp4", "m4v"},
]

_FAMILY_BY_EXT: dict[str, str] = {
    ext: sorted(family)[0] for family in EXTENSION_FAMILIES for ext in family
}

_COPY_SUFFIX = re.compile(r"(?:\s*\((?:copy|\d+)\)|[ _-]copy)$")
_SEPARATORS = re.compile(r"[\s_.\-]+")
_PUNCTUATION = re.compile(r"[^a-z0-9-]")


def split_name(filename: str) -> tuple[str, str]:
    """Split a filename into (stem, lowercase extension without dot)."""
    stem, ext = posixpath.splitext(filename)
    return stem, ext[1:].lower()


def extension_family(ext: str) -> str:
    """Canonical extension for a family (jpeg -> jpe, tiff -> tif)."""
    ext = ext.lower()
    return _FAMILY_BY_EXT.get(ext, ext)


def normalize_stem(stem: str) -> str:
    """Lowercase a stem, strip copy markers, collapse separators, drop punctuation."""
    stem = stem.lower().strip()
    previous = None
    while previous != stem:
        previous = stem
        stem = _COPY_SUFFIX.sub("", stem).strip()
    stem = _SEPARATORS.sub("-", stem)
    stem = _PUNCTUATION.sub("", stem)
    return stem.strip("-")


def normalize_filename(filename: str) -> str:
    """Normalize a filename for tolerant comparison.

    Example:
        >>> normalize_filename("Photo A (copy).JPG")
        'photo-a.jpg'
        >>> normalize_filename("photoA_copy.jpg.bak")
        'photoa.jpg'
    """
    name = filename.strip()
    if name.lower().endswith(".bak"):
        name = name[:-4]
    stem, ext = split_name(name)
    normalized = normalize_stem(stem)
    return f"{normalized}.{ext}" if ext else normalized


def levenshtein(a: str, b: str, limit: int | None = None) -> int:
    """Edit distance between two strings.

    Args:
        a: First string.
        b: Second string.
        limit: Stop early once every path exceeds this distance and return limit + 1.
    """
    if a == b:
        return 0
    if len(a) < len(b):
        a, b = b, a
    if not b:
        return len(a)
    if limit is not None and len(a) - len(b) > limit:
        return limit + 1

    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(
                min(
                    previous[j] + 1,
                    current[j - 1] + 1,
                    previous[j - 1] + (ca != cb),
                )
            )
        if limit is not None and min(current) > limit:
            return limit + 1
        previous = current
    return previous[-1]


def name_similarity(a: str, b: str) -> float:
    """Similarity ratio in [0, 1] between two normalized filenames."""
    return difflib.SequenceMatcher(None, normalize_filename(a), normalize_filename(b)).ratio()


@dataclass(frozen=True, slots=True)
class MatchResult:
    """Result of looking for an asset's file.

    Attributes:
        found: Whether a match should be applied.
        file: The matched file, if found.
        strategy: Strategy that produced the match (or the rejected candidate).
        confidence: Confidence in [0, 1] of the applied match, 0.0 if none.
        rejected_file: Best fuzzy candidate that fell below the confidence gate.
        rejected_confidence: Confidence of the rejected candidate.
    """

    found: bool
    file: FileRecord | None
    strategy: MatchStrategy | None
    confidence: float
    rejected_file: FileRecord | None = None
    rejected_confidence: float | None = None

    @classmethod
    def matched(cls, file: FileRecord, strategy: MatchStrategy, confidence: float) -> MatchResult:
        """Create a result for an applied match."""
        return cls(found=True, file=file, strategy=strategy, confidence=confidence)

    @classmethod
    def rejected(cls, file: FileRecord, confidence: float) -> MatchResult:
        """Create a result for a fuzzy candidate below the confidence gate."""
        return cls(
            found=False,
            file=None,
            strategy="fuzzy",
            confidence=0.0,
            rejected_file=file,
            rejected_confidence=confidence,
        )

    @classmethod
    def not_found(cls) -> MatchResult:
        """Create a result indicating no candidate exists."""
        return cls(found=False, file=None, strategy=None, confidence=0.0)


class FileIndex:
    """Lookup tables over scanned files.

    Example:
        >>> index = FileIndex([FileRecord("uploads", "a/photo.jpg", "photo.jpg", 10)])
        >>> index.contains("uploads", "a/photo.jpg")
        True
    """

    def __init__(self, files: Iterable[FileRecord] = ()) -> None:
        self.exact: dict[str, list[FileRecord]] = {}
        self.case_insensitive: dict[str, list[FileRecord]] = {}
        self.normalized: dict[str, list[FileRecord]] = {}
        self.basename: dict[tuple[str, str], list[FileRecord]] = {}
        self.by_size: dict[int, list[FileRecord]] = {}
        self.by_path: dict[tuple[str, str], FileRecord] = {}
        self._by_length: dict[int, list[tuple[str, FileRecord]]] = {}

        for file in files:
            self.add(file)

    def add(self, file: FileRecord) -> None:
        """Index a file."""
        if (file.provider_id, file.path) in self.by_path:
            return
        self.by_path[(file.provider_id, file.path)] = file
        self.exact.setdefault(file.filename, []).append(file)
        self.case_insensitive.setdefault(file.filename.lower(), []).append(file)

        normalized = normalize_filename(file.filename)
        self.normalized.setdefault(normalized, []).append(file)

        stem, ext = split_name(normalized)
        self.basename.setdefault((stem, extension_family(ext)), []).append(file)

        if file.size > 0:
            self.by_size.setdefault(file.size, []).append(file)

        lowered = file.filename.lower()
        self._by_length.setdefault(len(lowered), []).append((lowered, file))

    def discard(self, file: FileRecord) -> None:
        """Remove a file from every lookup (e.g. after it was moved or deleted)."""
        if self.by_path.pop((file.provider_id, file.path), None) is None:
            return

        normalized = normalize_filename(file.filename)
        stem, ext = split_name(normalized)
        lowered = file.filename.lower()
        for table, key in (
            (self.exact, file.filename),
            (self.case_insensitive, lowered),
            (self.normalized, normalized),
            (self.basename, (stem, extension_family(ext))),
            (self.by_size, file.size),
        ):
            bucket = table.get(key)
            if bucket and file in bucket:
                bucket.remove(file)
                if not bucket:
                    del table[key]

        by_length = self._by_length.get(len(lowered), [])
        if (lowered, file) in by_length:
            by_length.remove((lowered, file))

    def contains(self, provider_id: str, path: str) -> bool:
        return (provider_id, path.strip("/")) in self.by_path

    def get(self, provider_id: str, path: str) -> FileRecord | None:
        return self.by_path.get((provider_id, path.strip("/")))

    def files_in(self, provider_id: str) -> list[FileRecord]:
        """All indexed files of one provider, ordered by path."""
        return sorted(
            (f for (pid, _), f in self.by_path.items() if pid == provider_id),
            key=lambda f: f.path,
        )

    def fuzzy_candidates(self, name: str) -> list[tuple[str, FileRecord]]:
        """Files whose lowercase name length is within the tolerance of ``name``."""
        low = int(len(name) * (1 - LENGTH_TOLERANCE))
        high = int(len(name) * (1 + LENGTH_TOLERANCE)) + 1
        candidates: list[tuple[str, FileRecord]] = []
        for length in range(max(low, 1), high + 1):
            candidates.extend(self._by_length.get(length, []))
        return candidates

    def __len__(self) -> int:
        return len(self.by_path)


class FileMatcher:
    """Finds the most likely file for an asset with a missing file.

    Strategies, first hit wins:
    1. Exact filename in the asset's own volume (1.0)
    2. Exact filename anywhere (0.95)
    3. Case-insensitive filename (0.85)
    4. Normalized filename (0.75)
    5. Same basename within an extension family, e.g. jpg/jpeg (0.70)
    6. Same byte size and similar name (0.60)
    7. Bounded fuzzy match (1 - distance / max length), gated by min_confidence

    Among several files matched by one strategy, files in the target volume
    win, then the most recently modified.
    """

    def __init__(self, target_volume: str, min_confidence: float = DEFAULT_MIN_CONFIDENCE) -> None:
        """Initialize the matcher.

        Args:
            target_volume: Volume preferred when several files match.
            min_confidence: Confidence below which fuzzy matches are rejected.
        """
        self.target_volume = target_volume
        self.min_confidence = min_confidence
        self._stats: dict[str, int] = {}

    def _pick(self, candidates: list[FileRecord]) -> FileRecord:
        return max(
            candidates,
            key=lambda f: (f.provider_id == self.target_volume, f.last_modified or 0.0, f.path),
        )

    def _record(self, outcome: str) -> None:
        self._stats[outcome] = self._stats.get(outcome, 0) + 1

    def _matched(self, candidates: list[FileRecord], strategy: MatchStrategy) -> MatchResult:
        self._record(strategy)
        return MatchResult.matched(self._pick(candidates), strategy, STRATEGY_CONFIDENCE[strategy])

    def find_match(self, asset: AssetRecord, index: FileIndex) -> MatchResult:
        """Find a file for an asset.

        Args:
            asset: Asset whose file is missing.
            index: Index of scanned files.

        Returns:
            MatchResult with the chosen file and its confidence.
        """
        filename = asset.filename

        exact = index.exact.get(filename, [])
        same_volume = [f for f in exact if f.provider_id == asset.volume_id]
        if same_volume:
            return self._matched(same_volume, "exact_same_volume")
        if exact:
            return self._matched(exact, "exact")

        insensitive = index.case_insensitive.get(filename.lower(), [])
        if insensitive:
            return self._matched(insensitive, "case_insensitive")

        normalized = normalize_filename(filename)
        by_normalized = index.normalized.get(normalized, [])
        if by_normalized:
            return self._matched(by_normalized, "normalized")

        stem, ext = split_name(normalized)
        by_basename = index.basename.get((stem, extension_family(ext)), [])
        if by_basename:
            return self._matched(by_basename, "extension_family")

        if asset.size:
            similar = [
                f
                for f in index.by_size.get(asset.size, [])
                if name_similarity(filename, f.filename) > SIMILARITY_THRESHOLD
            ]
            if similar:
                return self._matched(similar, "size_similarity")

        return self._fuzzy(asset, index)

    def _fuzzy(self, asset: AssetRecord, index: FileIndex) -> MatchResult:
        name = asset.filename.lower()
        prefix = name[:3]

        best_distance: int | None = None
        best: list[FileRecord] = []
        for candidate_name, file in index.fuzzy_candidates(name):
            if levenshtein(prefix, candidate_name[:3]) > MAX_PREFIX_DISTANCE:
                continue
            distance = levenshtein(name, candidate_name, limit=MAX_EDIT_DISTANCE)
            if distance > MAX_EDIT_DISTANCE:
                continue
            if best_distance is None or distance < best_distance:
                best_distance = distance
                best = [file]
            elif distance == best_distance:
                best.append(file)

        if best_distance is None:
            self._record("not_found")
            return MatchResult.not_found()

        chosen = self._pick(best)
        confidence = 1 - best_distance / max(len(name), len(chosen.filename))
        if confidence < self.min_confidence:
            logger.debug(
                "Rejected fuzzy match for asset %s: %s (confidence %.2f)",
                asset.id,
                chosen.path,
                confidence,
            )
            self._record("rejected")
            return MatchResult.rejected(chosen, round(confidence, 4))

        self._record("fuzzy")
        return MatchResult.matched(chosen, "fuzzy", round(confidence, 4))

    def get_stats(self) -> dict[str, int]:
        """Get per-strategy match counts."""
        return dict(self._stats)

    def __repr__(self) -> str:
        return f"FileMatcher(target_volume={self.target_volume!r}, min_confidence={self.min_confidence})"
