"""Version extraction, classification and update selection."""

import enum
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from tag_pattern import Pattern, match_tag

logger = logging.getLogger(__name__)


class Classification(enum.Enum):
    CURRENT = "current"
    COMPATIBLE = "compatible"
    BREAKING = "breaking"
    NOT_AN_UPDATE = "not-an-update"


@dataclass(frozen=True)
class ExtractedVersion:
    """Slot values pulled out of one tag by one pattern.

    The tag keeps its original spelling (leading zeros included) for
    display; only ``values`` take part in comparisons.
    """
    tag: str
    values: Tuple[int, ...]
    pattern: Pattern

    @classmethod
    def extract(cls, pattern: Pattern, tag: str) -> Optional["ExtractedVersion"]:
        values = match_tag(pattern, tag)
        if values is None:
            return None
        return cls(tag=tag, values=values, pattern=pattern)

    def _check_comparable(self, other: "ExtractedVersion") -> None:
        if self.pattern != other.pattern:
            raise ValueError(
                f"Cannot compare '{self.tag}' ({self.pattern.source}) with "
                f"'{other.tag}' ({other.pattern.source}): versions come from different patterns"
            )

    def sort_key(self) -> Tuple[Tuple[int, ...], str]:
        return (self.values, self.tag)

    def __lt__(self, other: "ExtractedVersion") -> bool:
        if not isinstance(other, ExtractedVersion):
            return NotImplemented
        self._check_comparable(other)
        return self.values < other.values


@dataclass(frozen=True)
class Update:
    classification: Classification
    version: ExtractedVersion

    @property
    def tag(self) -> str:
        return self.version.tag

    @property
    def values(self) -> Tuple[int, ...]:
        return self.version.values


def classify(current: ExtractedVersion, candidate: ExtractedVersion) -> Classification:
    """Classify a candidate against the current version.

    Slots are scanned left to right; the first slot that differs decides.
    A higher value there is a breaking or compatible update depending on
    the slot's flag, a lower value is not an update at all.
    """
    current._check_comparable(candidate)
    for index, (old, new) in enumerate(zip(current.values, candidate.values)):
        if old == new:
            continue
        if new < old:
            return Classification.NOT_AN_UPDATE
        if current.pattern.is_breaking(index):
            return Classification.BREAKING
        return Classification.COMPATIBLE
    return Classification.CURRENT


def select_updates(current: ExtractedVersion, tags: Iterable[str]) -> List[Update]:
    """Pick the best compatible and the best breaking update.

    Every tag is consumed; tags that do not follow the current version's
    pattern are skipped.  Within a classification the highest version wins,
    compared slot by slot; identical values (e.g. ``1.02`` vs ``1.2``) are
    settled by the greater tag string.

    Args:
        current: Version of the tag in use
        tags: All tags of the repository, in any order

    Returns:
        Zero, one or two updates: the compatible one first, then the breaking one
    """
    best = {Classification.COMPATIBLE: None, Classification.BREAKING: None}
    seen = matched = 0

    for tag in tags:
        seen += 1
        candidate = ExtractedVersion.extract(current.pattern, tag)
        if candidate is None:
            continue
        matched += 1

        classification = classify(current, candidate)
        if classification not in best:
            continue
        leader: Optional[ExtractedVersion] = best[classification]
        if leader is None or candidate.sort_key() > leader.sort_key():
            best[classification] = candidate

    logger.debug(
        f"{matched} of {seen} tags match pattern '{current.pattern.source}' "
        f"(current: {current.tag})"
    )
    return [
        Update(classification, version)
        for classification, version in best.items()
        if version is not None
    ]
