"""
Resolve the kids and characters selected for a story
"""
import logging
from typing import Dict, Iterable, List, TypeVar

from app.models.story import Companion, FamilyContext, FamilyMember, GenerationRequest

logger = logging.getLogger(__name__)

T = TypeVar("T", FamilyMember, Companion)


def _select(ids: Iterable[int], records: Iterable[T], label: str) -> List[T]:
    by_id: Dict[int, T] = {record.id: record for record in records}
    selected: List[T] = []
    seen = set()
    for record_id in ids:
        if record_id in seen:
            continue
        seen.add(record_id)
        record = by_id.get(record_id)
        if record is None:
            logger.debug(f"Dropping unknown {label} id {record_id}")
            continue
        selected.append(record)
    return selected


def build_family_context(
    request: GenerationRequest,
    kids: Iterable[FamilyMember],
    characters: Iterable[Companion]
) -> FamilyContext:
    """Match requested ids against the caller's own kids and characters"""
    return FamilyContext(
        kids=_select(request.kid_ids, kids, "kid"),
        characters=_select(request.character_ids, characters, "character"),
    )


def kid_attribute_phrases(kid: FamilyMember) -> List[str]:
    """Descriptive phrases for the attributes that were actually provided"""
    phrases = [f"{kid.age} years old"]
    if kid.hair_color:
        phrases.append(f"{kid.hair_color.value} hair")
    if kid.hair_length:
        phrases.append(f"{kid.hair_length.value} hair")
    if kid.eye_color:
        phrases.append(f"{kid.eye_color.value} eyes")
    if kid.skin_tone:
        phrases.append(f"{kid.skin_tone.value} skin")
    return phrases

