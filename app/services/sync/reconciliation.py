"""
Reconciliation
Pure functions that compare fetched entities with the external ids already
stored locally.

Duplicate precedence: FIRST-SEEN wins. Pages are requested in increasing
order, so the copy kept is the one from the earliest page; later copies
(produced by remote writes shifting pagination mid-run) are dropped and
counted in duplicates_dropped.
"""
from datetime import datetime
from typing import Any, Iterable, List, Mapping, Optional, Tuple

from app.models.schemas import DiffResult, ExternalEntity


def normalize_external_id(value: Any) -> Optional[str]:
    """
    Canonical string form of an external id.

    None, empty and whitespace-only values mean "absent" and return None so
    they can never match each other.
    """
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip()
    return text or None


def dedupe(entities: Iterable[ExternalEntity]) -> Tuple[List[ExternalEntity], int]:
    """Collapse duplicate external ids, keeping the first occurrence."""
    seen = set()
    unique: List[ExternalEntity] = []
    dropped = 0
    for entity in entities:
        if entity.external_id in seen:
            dropped += 1
            continue
        seen.add(entity.external_id)
        unique.append(entity)
    return unique, dropped


def _as_datetime(value: str) -> Optional[datetime]:
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def is_changed(entity: ExternalEntity, local_version: Optional[Any]) -> bool:
    """
    True when the remote updated-at differs from the stored one.

    A remote record without updated_at carries no evidence of change and is
    reported unchanged; FULL mode rewrites those.
    """
    if not entity.updated_at:
        return False
    if local_version is None or local_version == "":
        return True

    remote = _as_datetime(entity.updated_at)
    local = _as_datetime(str(local_version))
    if remote is not None and local is not None:
        if (remote.tzinfo is None) != (local.tzinfo is None):
            # naive vs aware: compare wall-clock values
            return remote.replace(tzinfo=None) != local.replace(tzinfo=None)
        return remote != local
    return entity.updated_at != str(local_version)


def diff(
    remote_entities: Iterable[ExternalEntity],
    existing_ids: Iterable[Any],
    existing_versions: Optional[Mapping[str, Any]] = None
) -> DiffResult:
    """
    Split fetched entities into missing (not stored) and matched (stored).

    Args:
        remote_entities: fetched entities, duplicates allowed
        existing_ids: external ids present locally; null/empty keys ignored
        existing_versions: optional external id -> stored updated-at; when
            given, matched entities whose version differs are also listed
            in `changed`

    Invariant: missing_count + existing_count == number of unique remote ids
    """
    unique, dropped = dedupe(remote_entities)
    known = {key for key in (normalize_external_id(i) for i in existing_ids) if key is not None}

    missing: List[ExternalEntity] = []
    matched: List[ExternalEntity] = []
    changed: List[ExternalEntity] = []

    for entity in unique:
        if entity.external_id in known:
            matched.append(entity)
            if existing_versions is not None and is_changed(entity, existing_versions.get(entity.external_id)):
                changed.append(entity)
        else:
            missing.append(entity)

    return DiffResult(
        missing=missing,
        changed=changed,
        matched=matched,
        existing_count=len(matched),
        missing_count=len(missing),
        duplicates_dropped=dropped,
    )
