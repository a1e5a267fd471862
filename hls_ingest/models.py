# hls_ingest/models.py
"""
Plain data carried between the pipeline stages.
"""
from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

# Fields copied verbatim from a source document into the metadata record.
CARRIED_FIELDS = ("source_id", "raw_url", "image_url", "username", "tags", "description", "views")


@dataclass(frozen=True)
class WorkItem:
    source_url: str
    processed: bool = False
    source_id: Optional[str] = None
    raw_url: Optional[str] = None
    image_url: Optional[str] = None
    username: Optional[str] = None
    tags: Tuple[str, ...] = ()
    description: Optional[str] = None
    views: Optional[int] = None

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "WorkItem":
        """Build a WorkItem from a catalog document (DynamoDB item or plain dict).

        Accepts the legacy ``videoUrl`` / ``_id`` keys used by older producers.
        """
        source_url = doc.get("source_url") or doc.get("videoUrl") or ""
        views = doc.get("views")
        if isinstance(views, Decimal):
            views = int(views)
        tags = doc.get("tags") or ()
        if isinstance(tags, str):
            tags = (tags,)
        source_id = doc.get("source_id", doc.get("_id"))
        return cls(
            source_url=str(source_url),
            processed=bool(doc.get("processed", False)),
            source_id=str(source_id) if source_id is not None else None,
            raw_url=doc.get("raw_url", doc.get("rawUrl")),
            image_url=doc.get("image_url", doc.get("imageUrl")),
            username=doc.get("username"),
            tags=tuple(str(t) for t in tags),
            description=doc.get("description"),
            views=views,
        )

    def to_document(self) -> Dict[str, Any]:
        doc: Dict[str, Any] = {"source_url": self.source_url, "processed": self.processed}
        for name in CARRIED_FIELDS:
            value = getattr(self, name)
            if value is None or value == ():
                continue
            doc[name] = list(value) if name == "tags" else value
        return doc


@dataclass(frozen=True)
class UploadManifest:
    """Object keys published for one item, in upload order.

    ``playlist_key`` is the single key ending with the playlist extension.
    """
    keys: Tuple[str, ...]
    playlist_key: str

    @property
    def segment_keys(self) -> Tuple[str, ...]:
        return tuple(k for k in self.keys if k != self.playlist_key)


@dataclass(frozen=True)
class MetadataRecord:
    identity: str
    source_url: str
    public_playlist_url: str
    playlist_key: str
    object_keys: Tuple[str, ...]
    processed_at: str
    source_id: Optional[str] = None
    raw_url: Optional[str] = None
    image_url: Optional[str] = None
    username: Optional[str] = None
    tags: Tuple[str, ...] = ()
    description: Optional[str] = None
    views: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """JSON/DynamoDB friendly dict; empty optional fields are dropped."""
        out: Dict[str, Any] = {}
        for key, value in asdict(self).items():
            if value is None or value == () or value == []:
                continue
            out[key] = list(value) if isinstance(value, tuple) else value
        return out


class Stage(str, enum.Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    TRANSCODING = "transcoding"
    UPLOADING = "uploading"
    RECORDING = "recording"
    CLEANING = "cleaning"
    DONE = "done"
    FAILED = "failed"


# Allowed forward moves. FAILED is reachable from every non-terminal stage.
TRANSITIONS: Dict[Stage, Tuple[Stage, ...]] = {
    Stage.PENDING: (Stage.FETCHING, Stage.DONE),
    Stage.FETCHING: (Stage.TRANSCODING,),
    Stage.TRANSCODING: (Stage.UPLOADING,),
    Stage.UPLOADING: (Stage.RECORDING,),
    Stage.RECORDING: (Stage.CLEANING,),
    Stage.CLEANING: (Stage.DONE,),
    Stage.DONE: (),
    Stage.FAILED: (),
}

TERMINAL_STAGES = (Stage.DONE, Stage.FAILED)


@dataclass
class ItemOutcome:
    source_url: str
    identity: Optional[str] = None
    state: Stage = Stage.PENDING
    history: List[Stage] = field(default_factory=lambda: [Stage.PENDING])
    failed_stage: Optional[Stage] = None
    error: Optional[BaseException] = None
    skipped: bool = False
    skip_reason: Optional[str] = None
    record: Optional[MetadataRecord] = None

    def advance(self, target: Stage) -> None:
        if target not in TRANSITIONS[self.state]:
            raise ValueError(f"Illegal transition {self.state.value} -> {target.value}")
        self.state = target
        self.history.append(target)

    def fail(self, error: BaseException) -> None:
        if self.state in TERMINAL_STAGES:
            raise ValueError(f"Item already terminal ({self.state.value})")
        self.failed_stage = self.state
        self.error = error
        self.state = Stage.FAILED
        self.history.append(Stage.FAILED)

    @property
    def succeeded(self) -> bool:
        return self.state is Stage.DONE and not self.skipped


@dataclass
class RunSummary:
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    failures: List[ItemOutcome] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return self.succeeded + self.failed + self.skipped

    def add(self, outcome: ItemOutcome) -> None:
        if outcome.state is Stage.FAILED:
            self.failed += 1
            self.failures.append(outcome)
        elif outcome.skipped:
            self.skipped += 1
        else:
            self.succeeded += 1
