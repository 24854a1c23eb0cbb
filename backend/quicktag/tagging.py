"""Sequential tagging queue.

Each tagging session owns a FIFO of operations, a single-flight execution
channel and a dispatcher that drains the FIFO one operation at a time. All
state is mutated on the event loop only, so a session behaves as a
single-threaded actor.
"""
import asyncio
import inspect
import itertools
import json
import os
import uuid
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Tuple

from .operations import execute_operation
from .shopify_client import numeric_id
from .schemas import ChannelState, Operation, OperationKind, ResultRecord, TagStatus

DISPATCH_POLL_INTERVAL_MS = int(os.environ.get("DISPATCH_POLL_INTERVAL_MS", "0").strip() or 0)
EXPIRATION_APP_URL = os.environ.get("EXPIRATION_APP_URL", "").strip()


def _log_dispatcher(payload: Dict[str, Any]) -> None:
    try:
        print(json.dumps({"component": "dispatcher", **payload}, ensure_ascii=False, default=str))
    except Exception:
        print({"component": "dispatcher", **payload})


# ---------- Queue ----------
class QueueStore:
    """FIFO of pending operations. Only the dispatcher takes items off the head."""

    def __init__(self):
        self._items: Deque[Operation] = deque()
        self._seq = itertools.count(1)

    def enqueue(self, op: Operation) -> Operation:
        stamped = op.model_copy(update={"seq": next(self._seq)})
        self._items.append(stamped)
        return stamped

    def peek(self) -> Optional[Operation]:
        return self._items[0] if self._items else None

    def dequeue(self) -> Optional[Operation]:
        return self._items.popleft() if self._items else None

    def discard(self, seq: int) -> bool:
        for op in self._items:
            if op.seq == seq:
                self._items.remove(op)
                return True
        return False

    def pending(self) -> List[Operation]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)


# ---------- History ----------
def merge_result(history: List[ResultRecord], record: ResultRecord) -> List[ResultRecord]:
    """Fold a settled result into the history, newest first.

    Failures always become a new entry. A success replaces the entry with the
    same ``(first product id, tag used)`` in place so rows do not jump around.
    """
    if not record.success:
        return [record, *history]
    key = record.merge_key()
    for idx, existing in enumerate(history):
        if existing.success and existing.merge_key() == key:
            updated = list(history)
            updated[idx] = record
            return updated
    return [record, *history]


# ---------- Tag status ----------
class TagStatusTable:
    """Per ``(product id, tag)`` status. Search-level statuses use ``None`` as product id."""

    def __init__(self):
        self._table: Dict[Tuple[Optional[str], str], TagStatus] = {}

    def mark_deleted(self, product_id: str, tag: str) -> None:
        self._table[(product_id, tag)] = TagStatus.DELETED

    def mark_readded(self, product_id: str, tag: str) -> None:
        self._table[(product_id, tag)] = TagStatus.READDED

    def record_search(self, tag: str, success: bool) -> None:
        self._table[(None, tag)] = TagStatus.SUCCESS if success else TagStatus.FAILURE

    def get(self, product_id: Optional[str], tag: str) -> TagStatus:
        return self._table.get((product_id, tag), TagStatus.EXISTING)

    def search_status(self, tag: str) -> Optional[TagStatus]:
        return self._table.get((None, tag))

    def display_status(self, product_id: Optional[str], tag: str) -> TagStatus:
        own = self._table.get((product_id, tag))
        if own is not None:
            return own
        return self._table.get((None, tag), TagStatus.EXISTING)

    def reset(self) -> None:
        self._table.clear()

    def snapshot(self) -> List[Dict[str, Any]]:
        return [{"product_id": pid, "tag": tag, "status": st.value} for (pid, tag), st in self._table.items()]

    def __len__(self) -> int:
        return len(self._table)


# ---------- Execution channel ----------
class ExecutionChannel:
    """Single outstanding request primitive: idle -> busy -> idle with a result."""

    def state(self) -> ChannelState:
        raise NotImplementedError

    def submit(self, op: Operation) -> None:
        raise NotImplementedError

    def last_result(self) -> Optional[ResultRecord]:
        raise NotImplementedError

    async def wait_idle(self) -> None:
        raise NotImplementedError


Executor = Callable[[Operation], Awaitable[ResultRecord]]


class OperationChannel(ExecutionChannel):
    def __init__(self, executor: Executor):
        self._executor = executor
        self._state = ChannelState.IDLE
        self._result: Optional[ResultRecord] = None
        self._idle = asyncio.Event()
        self._idle.set()
        self._task: Optional[asyncio.Task] = None

    def state(self) -> ChannelState:
        return self._state

    def last_result(self) -> Optional[ResultRecord]:
        return self._result

    def submit(self, op: Operation) -> None:
        if self._state == ChannelState.BUSY:
            raise RuntimeError("execution channel already has a request in flight")
        self._state = ChannelState.BUSY
        self._result = None
        self._idle.clear()
        self._task = asyncio.get_running_loop().create_task(self._run(op))

    async def _run(self, op: Operation) -> None:
        try:
            self._result = await self._executor(op)
        except Exception as e:
            self._result = ResultRecord(success=False, error=str(e) or e.__class__.__name__, error_kind="remote_error", kind=op.kind, seq=op.seq)
        finally:
            self._state = ChannelState.IDLE
            self._idle.set()

    async def wait_idle(self) -> None:
        await self._idle.wait()


# ---------- Dispatcher ----------
ResultHandler = Callable[[Operation, ResultRecord], Any]


class Dispatcher:
    def __init__(self, queue: QueueStore, channel: ExecutionChannel, on_result: ResultHandler, poll_interval: float = 0.0):
        self.queue = queue
        self.channel = channel
        self.on_result = on_result
        self.poll_interval = poll_interval
        self._draining = False
        self._in_flight: Optional[Operation] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def draining(self) -> bool:
        return self._draining

    @property
    def in_flight(self) -> Optional[Operation]:
        return self._in_flight

    def kick(self) -> None:
        """Start draining if there is work and no drain is running."""
        if self._draining or len(self.queue) == 0:
            return
        self._draining = True
        self._task = asyncio.get_running_loop().create_task(self._drain())

    async def join(self) -> None:
        while self._task is not None and not self._task.done():
            await asyncio.shield(self._task)

    async def _wait_settled(self) -> None:
        if self.poll_interval > 0:
            while self.channel.state() != ChannelState.IDLE:
                await asyncio.sleep(self.poll_interval)
        else:
            await self.channel.wait_idle()

    async def _drain(self) -> None:
        try:
            while True:
                op = self.queue.peek()
                if op is None:
                    break
                self._in_flight = op
                _log_dispatcher({"event": "submit", "seq": op.seq, "kind": op.kind.value})
                try:
                    self.channel.submit(op)
                    await self._wait_settled()
                    result = self.channel.last_result() or ResultRecord(success=False, error="no result", error_kind="remote_error", kind=op.kind, seq=op.seq)
                except Exception as e:
                    result = ResultRecord(success=False, error=str(e), error_kind="remote_error", kind=op.kind, seq=op.seq)
                self.queue.dequeue()
                self._in_flight = None
                _log_dispatcher({"event": "settled", "seq": op.seq, "success": result.success, "error": result.error})
                try:
                    handled = self.on_result(op, result)
                    if inspect.isawaitable(handled):
                        await handled
                except Exception as e:
                    _log_dispatcher({"event": "result_handler_failed", "seq": op.seq, "error": str(e)})
        finally:
            self._in_flight = None
            self._draining = False


# ---------- Feedback ----------
def replace_characters(text: str) -> str:
    """Make text friendlier for speech synthesis."""
    return (text or "").replace(":", " ").replace("-", " dash, ")


def feedback_for(record: ResultRecord) -> Dict[str, str]:
    if record.success:
        title = record.products[0].title if record.products else ""
        spoken = " ".join(p for p in [record.tag_used or "", title] if p)
        return {"sound": "success", "speech": replace_characters(spoken or "Success")}
    return {"sound": "failure", "speech": replace_characters(record.error or "Failure")}


# ---------- Session ----------
Listener = Callable[[Dict[str, Any]], Awaitable[None]]


class TagSession:
    def __init__(self, session_id: str, shop: Optional[str] = None, executor: Optional[Executor] = None, poll_interval: Optional[float] = None):
        self.id = session_id
        self.shop = shop
        self.queue = QueueStore()
        self.history: List[ResultRecord] = []
        self.statuses = TagStatusTable()
        self.listeners: List[Listener] = []
        if executor is None:
            async def executor(op: Operation) -> ResultRecord:
                return await execute_operation(op, shop=self.shop)
        self.channel = OperationChannel(executor)
        interval = (DISPATCH_POLL_INTERVAL_MS / 1000.0) if poll_interval is None else poll_interval
        self.dispatcher = Dispatcher(self.queue, self.channel, self._on_result, poll_interval=interval)

    # -- producers --
    def _enqueue(self, op: Operation) -> Operation:
        stamped = self.queue.enqueue(op)
        self.dispatcher.kick()
        return stamped

    def enqueue_scan(self, barcode: str, tag: str) -> Operation:
        return self._enqueue(Operation(kind=OperationKind.SEARCH_AND_TAG, barcode=barcode, tag=tag))

    def enqueue_delete_tag(self, product_id: str, tag: str, row_tag: Optional[str] = None) -> Operation:
        self.statuses.mark_deleted(product_id, tag)
        return self._enqueue(Operation(kind=OperationKind.DELETE_TAG, product_id=product_id, tag=tag, row_tag=row_tag))

    def enqueue_add_tag(self, product_id: str, tag: str, row_tag: Optional[str] = None) -> Operation:
        self.statuses.mark_readded(product_id, tag)
        return self._enqueue(Operation(kind=OperationKind.ADD_TAG, product_id=product_id, tag=tag, row_tag=row_tag))

    def enqueue_refresh(self, product_id: str, row_tag: Optional[str] = None) -> Operation:
        return self._enqueue(Operation(kind=OperationKind.REFRESH, product_id=product_id, row_tag=row_tag))

    def cancel(self, seq: int) -> bool:
        in_flight = self.dispatcher.in_flight
        if in_flight is not None and in_flight.seq == seq:
            return False
        return self.queue.discard(seq)

    def reset(self) -> None:
        self.history = []
        self.statuses.reset()

    # -- consumer side --
    async def _on_result(self, op: Operation, record: ResultRecord) -> None:
        self.history = merge_result(self.history, record)
        if op.kind == OperationKind.SEARCH_AND_TAG and record.tag_used:
            self.statuses.record_search(record.tag_used, record.success)
        event = {"type": "tagging.result", "session": self.id, "seq": op.seq, "success": record.success, **feedback_for(record)}
        for listener in list(self.listeners):
            try:
                await listener(event)
            except Exception:
                self.listeners.remove(listener)

    # -- view --
    def unique_product_count(self) -> int:
        ids = {r.products[0].id for r in self.history if r.success and r.kind == OperationKind.SEARCH_AND_TAG and r.products and r.products[0].id}
        return len(ids)

    def view(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "queue": {
                "pending": len(self.queue),
                "processing": self.dispatcher.draining,
                "in_flight": self.dispatcher.in_flight.seq if self.dispatcher.in_flight else None,
            },
            "unique_products": self.unique_product_count(),
            "rows": history_rows(self.history, self.statuses),
            "tag_statuses": self.statuses.snapshot(),
        }


def history_rows(history: List[ResultRecord], statuses: TagStatusTable) -> List[Dict[str, Any]]:
    rows: List[Dict[str, Any]] = []
    for record in history:
        if not record.tag_used:
            continue
        products = []
        for p in record.products:
            variants = []
            for v in p.variants:
                variants.append({
                    "id": v.id,
                    "title": p.title if v.title == "Default Title" else v.title,
                    "barcode": v.barcode or "N/A",
                    "sku": v.sku,
                    "quantity": v.inventory_quantity,
                    "location": v.location,
                    "thumbnail_url": v.thumbnail_url,
                    "expirations": [b.model_dump() for b in v.expiration_batches],
                    "expiration_link": f"{EXPIRATION_APP_URL}{numeric_id(v.id)}" if (EXPIRATION_APP_URL and v.id) else None,
                })
            tags = []
            if record.success:
                for t in p.tags:
                    st = statuses.display_status(p.id, t)
                    tags.append({
                        "tag": t,
                        "status": st.value,
                        "can_delete": st != TagStatus.DELETED,
                        "can_add_back": st == TagStatus.DELETED,
                    })
            products.append({
                "id": p.id,
                "title": p.title,
                "total_inventory": p.total_inventory,
                "location": p.location,
                "thumbnail_url": p.thumbnail_url,
                "variants": variants,
                "tags": tags,
            })
        rows.append({
            "status": "Success" if record.success else "Failure",
            "tag_used": record.tag_used,
            "error": record.error,
            "seq": record.seq,
            "timestamp": record.timestamp.isoformat(),
            "products": products,
        })
    return rows


class SessionRegistry:
    """Holds the live tagging sessions of this process, keyed by id."""

    def __init__(self, executor_factory: Optional[Callable[[Optional[str]], Executor]] = None):
        self._sessions: Dict[str, TagSession] = {}
        self._executor_factory = executor_factory

    def create(self, shop: Optional[str] = None) -> TagSession:
        sid = str(uuid.uuid4())
        executor = self._executor_factory(shop) if self._executor_factory else None
        session = TagSession(sid, shop=shop, executor=executor)
        self._sessions[sid] = session
        return session

    def get(self, session_id: str) -> Optional[TagSession]:
        return self._sessions.get(session_id)

    def drop(self, session_id: str) -> Optional[TagSession]:
        return self._sessions.pop(session_id, None)

    def drop_shop(self, shop: str) -> List[TagSession]:
        doomed = [sid for sid, s in self._sessions.items() if (s.shop or "") == shop]
        return [self._sessions.pop(sid) for sid in doomed]

    def __len__(self) -> int:
        return len(self._sessions)
