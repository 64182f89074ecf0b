"""
Data model shared by the master, the workers and the request queue.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from .utils import normalize_url, request_id_for


class Label(str, Enum):
    """Which route handles a fetched page."""
    UNLABELED = 'UNLABELED'
    CATEGORY = 'CATEGORY'
    DETAIL = 'DETAIL'


class EntryState(str, Enum):
    AVAILABLE = 'available'
    LOCKED = 'locked'
    RESOLVED = 'resolved'
    FAILED = 'failed'


class Outcome(str, Enum):
    """Terminal state a worker assigns to a leased request."""
    RESOLVED = 'resolved'
    FAILED = 'failed'


class EnqueueResult(str, Enum):
    ADDED = 'added'
    ALREADY_PRESENT = 'already_present'


@dataclass(frozen=True)
class CrawlRequest:
    """A page to fetch, and what the page is expected to be."""
    url: str
    label: Label = Label.UNLABELED
    unique_key: str = ''
    depth: int = 0

    def __post_init__(self):
        if not self.unique_key:
            object.__setattr__(self, 'unique_key', normalize_url(self.url))
        if not isinstance(self.label, Label):
            object.__setattr__(self, 'label', Label(self.label))

    @property
    def request_id(self):
        return request_id_for(self.unique_key)


@dataclass(frozen=True)
class ProductRecord:
    """Fields extracted from one product detail page."""
    url: str
    manufacturer: str
    title: str
    sku: str
    current_price: float
    available_in_stock: bool

    def to_dict(self):
        return {
            'url': self.url,
            'manufacturer': self.manufacturer,
            'title': self.title,
            'sku': self.sku,
            'currentPrice': self.current_price,
            'availableInStock': self.available_in_stock,
        }


@dataclass
class RouteResult:
    requests: List[CrawlRequest] = field(default_factory=list)
    record: Optional[ProductRecord] = None


class WorkerState(str, Enum):
    STARTING = 'starting'
    ONLINE = 'online'
    RUNNING = 'running'
    EXITED = 'exited'


@dataclass
class WorkerStatus:
    index: int
    pid: Optional[int] = None
    state: WorkerState = WorkerState.STARTING
    exit_code: Optional[int] = None
    signal: Optional[int] = None


# Messages sent from a worker process to the master

class LifecycleKind(str, Enum):
    ONLINE = 'online'
    RUNNING = 'running'
    EXIT = 'exit'


@dataclass
class RecordMessage:
    worker_index: int
    record: ProductRecord


@dataclass
class LifecycleEvent:
    worker_index: int
    kind: LifecycleKind
    pid: Optional[int] = None
    exit_code: Optional[int] = None
    signal: Optional[int] = None

    def __post_init__(self):
        self.kind = LifecycleKind(self.kind)


@dataclass
class CrawlSummary:
    """What the master reports once every worker has exited."""
    resolved: int = 0
    failed: int = 0
    pending: int = 0
    records: int = 0
    finished: bool = False
    workers: List[WorkerStatus] = field(default_factory=list)

    @property
    def ok(self):
        return self.finished
