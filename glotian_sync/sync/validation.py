"""Per-table row shapes and the mapping between remote rows and cached entities.

Every row crossing the remote boundary, in either direction, is validated
against one closed model per table. Full rows (inserts, inbound rows) must
carry every required field; update payloads are checked key by key.
"""

import dataclasses
from functools import lru_cache
from typing import Any, ClassVar, Dict, List, Literal, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from glotian_sync.storage.base import (
    CachedDeck,
    CachedFlashcard,
    CachedNote,
    CachedUserPreference,
)
from glotian_sync.types import SyncStatus

SourceType = Literal["manual", "image", "voice", "web", "extension"]
DifficultyLevel = Literal["easy", "medium", "hard"]
SrsAlgorithm = Literal["sm2", "fsrs-lite"]
CefrLevel = Literal["A1", "A2", "B1", "B2", "C1", "C2"]

CachedEntity = Union[CachedNote, CachedFlashcard, CachedDeck, CachedUserPreference]


class PayloadValidationError(ValueError):
    """A row or payload failed its table's shape check. Never retried."""

    def __init__(self, table: str, errors: List[str]):
        self.table = table
        self.errors = errors
        super().__init__(f"Invalid {table} payload: {'; '.join(errors)}")


class RemoteRow(BaseModel):
    """Base for the per-table row models."""

    model_config = ConfigDict(strict=True, extra="ignore")

    table: ClassVar[str]

    id: str
    user_id: str
    updated_at: str


class LearningNoteRow(RemoteRow):
    table: ClassVar[str] = "learning_notes"

    original_text: str
    translated_text: str
    source_language: str
    target_language: str
    created_at: str
    title: Optional[str] = None
    grammar_explanation: Optional[str] = None
    alternative_expressions: List[Any] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    source_type: Optional[SourceType] = None
    source_url: Optional[str] = None
    attached_image_url: Optional[str] = None
    folder_path: Optional[str] = None
    deleted_at: Optional[str] = None


class FlashcardRow(RemoteRow):
    table: ClassVar[str] = "flashcards"

    deck_id: str
    term: str
    definition: str
    language: str
    created_at: str
    source_note_id: Optional[str] = None
    part_of_speech: Optional[str] = None
    example_sentences: List[str] = Field(default_factory=list)
    difficulty_level: DifficultyLevel = "medium"
    deleted_at: Optional[str] = None


class FlashcardDeckRow(RemoteRow):
    table: ClassVar[str] = "flashcard_decks"

    name: str
    language: str
    created_at: str
    description: Optional[str] = None
    card_count: float = 0
    total_study_time_seconds: float = 0
    deleted_at: Optional[str] = None


class UserPreferenceRow(RemoteRow):
    table: ClassVar[str] = "user_preferences"

    ui_language: str
    learning_languages: List[str] = Field(default_factory=list)
    daily_goal_minutes: float = 15
    srs_algorithm: SrsAlgorithm = "sm2"
    target_cefr_level: CefrLevel = "B1"


ROW_MODELS: Dict[str, Type[RemoteRow]] = {
    model.table: model
    for model in (LearningNoteRow, FlashcardRow, FlashcardDeckRow, UserPreferenceRow)
}

# Cached entity class <-> remote table
ENTITY_CLASSES: Dict[str, type] = {
    "learning_notes": CachedNote,
    "flashcards": CachedFlashcard,
    "flashcard_decks": CachedDeck,
    "user_preferences": CachedUserPreference,
}
_CLASS_TO_TABLE = {cls: table for table, cls in ENTITY_CLASSES.items()}

# Cached field -> remote field, where the names differ
_NOTE_RENAMES = {"content": "original_text", "summary": "grammar_explanation"}
_LOCAL_ONLY_FIELDS = {"sync_status", "last_accessed_at"}


def _model_for(table: str) -> Type[RemoteRow]:
    try:
        return ROW_MODELS[table]
    except KeyError:
        raise PayloadValidationError(table, [f"unknown table {table!r}"]) from None


def _format_errors(exc: ValidationError) -> List[str]:
    return [
        f"{'.'.join(str(p) for p in err['loc']) or '<row>'}: {err['msg']}" for err in exc.errors()
    ]


def validate_row(table: str, data: Any) -> RemoteRow:
    """Validate a complete row for `table`.

    Raises:
        PayloadValidationError: if the row does not match the table's shape
    """
    model = _model_for(table)
    if not isinstance(data, dict):
        raise PayloadValidationError(table, ["row must be an object"])
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise PayloadValidationError(table, _format_errors(exc)) from exc


@lru_cache(maxsize=None)
def _field_adapter(table: str, field_name: str) -> TypeAdapter:
    annotation = ROW_MODELS[table].model_fields[field_name].annotation
    return TypeAdapter(annotation, config=ConfigDict(strict=True))


def validate_changes(table: str, changes: Any) -> Dict[str, Any]:
    """Validate a partial update. Unknown keys are rejected."""
    model = _model_for(table)
    if not isinstance(changes, dict) or not changes:
        raise PayloadValidationError(table, ["update payload must be a non-empty object"])
    errors = []
    clean: Dict[str, Any] = {}
    for key, value in changes.items():
        if key not in model.model_fields:
            errors.append(f"{key}: unknown field")
            continue
        try:
            clean[key] = _field_adapter(table, key).validate_python(value)
        except ValidationError as exc:
            errors.extend(f"{key}: {err['msg']}" for err in exc.errors())
    if errors:
        raise PayloadValidationError(table, errors)
    return clean


def is_full_row(table: str, data: Any) -> bool:
    try:
        validate_row(table, data)
    except PayloadValidationError:
        return False
    return True


# === Entity <-> Row Mapping ===


def table_for_entity(entity: CachedEntity) -> str:
    """Remote table for a cached entity instance."""
    try:
        return _CLASS_TO_TABLE[type(entity)]
    except KeyError:
        raise TypeError(f"Not a cached entity: {type(entity).__name__}") from None


def entity_to_row(entity: CachedEntity) -> Dict[str, Any]:
    """Remote row form of a cached entity (unvalidated)."""
    table = table_for_entity(entity)
    data = dataclasses.asdict(entity)
    row: Dict[str, Any] = {}
    for key, value in data.items():
        if key in _LOCAL_ONLY_FIELDS:
            continue
        if table == "learning_notes":
            key = _NOTE_RENAMES.get(key, key)
        row[key] = value
    if table == "user_preferences":
        row.pop("created_at", None)
    return row


def row_to_entity(
    table: str,
    row: Union[RemoteRow, Dict[str, Any]],
    sync_status: str = SyncStatus.SYNCED.value,
    last_accessed_at: Optional[int] = None,
) -> CachedEntity:
    """Build a cached entity from a validated row."""
    if not isinstance(row, RemoteRow):
        row = validate_row(table, row)
    data = row.model_dump()
    cls = ENTITY_CLASSES[table]
    if table == "learning_notes":
        for local_key, remote_key in _NOTE_RENAMES.items():
            data[local_key] = data.pop(remote_key)
    if table == "user_preferences":
        data["created_at"] = data["updated_at"]
    names = {f.name for f in dataclasses.fields(cls)}
    kwargs = {k: v for k, v in data.items() if k in names}
    kwargs["sync_status"] = sync_status
    kwargs["last_accessed_at"] = last_accessed_at
    return cls(**kwargs)


def summarize_row(table: str, row: Optional[Dict[str, Any]]) -> str:
    """Short human-readable label for conflict listings."""
    if not row:
        return ""
    if table == "learning_notes":
        text = row.get("original_text") or row.get("title") or ""
    elif table == "flashcards":
        text = f"{row.get('term', '')} - {row.get('definition', '')}"
    elif table == "flashcard_decks":
        text = row.get("name") or ""
    else:
        text = f"ui={row.get('ui_language', '')} goal={row.get('daily_goal_minutes', '')}"
    text = str(text)
    return text if len(text) <= 80 else text[:77] + "..."
