"""Merges per-point lookup results into one deduplicated locality list."""

from collections.abc import Iterable, Sequence

from models import LocalityRecord

PointResult = LocalityRecord | Sequence[LocalityRecord] | None


def aggregate(results: Iterable[PointResult]) -> list[LocalityRecord]:
    """Flattens per-point results and drops duplicate localities.

    ``results`` must be in sampling order. The first occurrence of a locality
    wins, so output order follows the route rather than lookup completion.

    Two records are the same locality when both have ids and the ids match.
    Without an id on either side, an exact (case-sensitive) name match
    decides. Records with different ids are kept apart even if they share a
    name: distinct villages often do.
    """
    kept: list[LocalityRecord] = []
    seen_ids: set[str] = set()
    seen_names: set[str] = set()
    anonymous_names: set[str] = set()

    for record in _flatten(results):
        if record.id:
            if record.id in seen_ids or record.name in anonymous_names:
                continue
            seen_ids.add(record.id)
        else:
            if record.name in seen_names:
                continue
            anonymous_names.add(record.name)
        seen_names.add(record.name)
        kept.append(record)

    return kept


def _flatten(results: Iterable[PointResult]) -> Iterable[LocalityRecord]:
    for result in results:
        if result is None:
            continue
        if isinstance(result, LocalityRecord):
            yield result
        else:
            yield from (r for r in result if r is not None)
