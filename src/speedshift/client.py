"""Client-side queue projection of the storage namespace.

``QueueState`` is the per-client view: an ordered list of entries built
from a full listing and kept current by broadcast events and by the
client's own requests. It does no I/O, so every transition can be driven
directly. ``QueueClient`` connects it to the HTTP routes and the event
websocket of a running server.

Processing rules:
    - Entries are matched to events by file name.
    - Events for names not in the queue are ignored.
    - Deletion is never optimistic; an entry leaves the queue only after
      the server confirms the file is gone.
    - A failed speed change restores the entry exactly as it was before
      the request.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import AsyncIterable, Dict, Iterable, List, Optional, Union

import httpx
import websockets
from websockets.exceptions import WebSocketException

from speedshift.models import (
    EventType,
    FileDeleted,
    FileEntry,
    JobFailed,
    JobStarted,
    JobSucceeded,
    UploadReceived,
)
from speedshift.naming import derive_name, group_versions, is_derived, speed_of

logger = logging.getLogger(__name__)


class EntryStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    ERROR = "error"


@dataclass
class QueueEntry:
    file_name: str
    status: EntryStatus = EntryStatus.PENDING
    speed: float = 1.0
    processed_file_name: Optional[str] = None
    file_size: Optional[int] = None
    versions: List[str] = field(default_factory=list)  # Derived names, oldest first
    id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass
class _Snapshot:
    """Entry fields captured before an optimistic speed change."""

    status: EntryStatus
    speed: float
    processed_file_name: Optional[str]
    requested_speed: float
    # Set when the direct response was lost; broadcasts settle the change.
    awaiting_event: bool = False


class QueueState:
    def __init__(self):
        self.entries: List[QueueEntry] = []
        self.current_index = 0
        self.last_error: Optional[str] = None
        self.error_count = 0
        self._pending: Dict[str, _Snapshot] = {}

    # --- lookup --------------------------------------------------------

    def get(self, entry_id: str) -> Optional[QueueEntry]:
        for entry in self.entries:
            if entry.id == entry_id:
                return entry
        return None

    def index_of(self, entry_id: str) -> int:
        for index, entry in enumerate(self.entries):
            if entry.id == entry_id:
                return index
        return -1

    def find_by_name(self, file_name: str) -> List[QueueEntry]:
        return [entry for entry in self.entries if entry.file_name == file_name]

    def has_pending_change(self, entry_id: str) -> bool:
        return entry_id in self._pending

    @property
    def current(self) -> Optional[QueueEntry]:
        if 0 <= self.current_index < len(self.entries):
            return self.entries[self.current_index]
        return None

    # --- full listing --------------------------------------------------

    def load_listing(self, files: Iterable[Union[FileEntry, dict, str]]) -> None:
        """Rebuild the queue from a server snapshot.

        Entries already known by name keep their id and position; new
        Originals are appended in listing order. Entries with a pending
        local speed change keep their optimistic fields, unless the
        listing already shows the requested version after a lost response.
        """
        names: List[str] = []
        mtimes: Dict[str, float] = {}
        sizes: Dict[str, int] = {}
        for item in files:
            if isinstance(item, str):
                names.append(item)
                continue
            if isinstance(item, dict):
                item = FileEntry.model_validate(item)
            names.append(item.storedName)
            mtimes[item.storedName] = item.mtime
            sizes[item.storedName] = item.size

        originals = [name for name in names if not is_derived(name)]
        versions = group_versions(names, mtimes)
        known = {entry.file_name: entry for entry in self.entries}
        selected = self.current.id if self.current else None

        rebuilt: List[QueueEntry] = []
        for entry in self.entries:
            if entry.file_name in originals:
                rebuilt.append(self._from_listing(
                    entry.file_name, versions.get(entry.file_name, []), sizes, existing=entry
                ))
        for name in originals:
            if name not in known:
                rebuilt.append(self._from_listing(name, versions.get(name, []), sizes))

        dropped = {entry.id for entry in self.entries} - {entry.id for entry in rebuilt}
        for entry_id in dropped:
            self._pending.pop(entry_id, None)

        self.entries = rebuilt
        self._reselect(selected)

    def _from_listing(
        self,
        name: str,
        versions: List[str],
        sizes: Dict[str, int],
        existing: Optional[QueueEntry] = None,
    ) -> QueueEntry:
        processed = versions[-1] if versions else None
        if existing is not None and existing.id in self._pending:
            pending = self._pending[existing.id]
            if not (pending.awaiting_event and processed == derive_name(name, pending.requested_speed)):
                return replace(
                    existing,
                    versions=list(versions),
                    file_size=sizes.get(name, existing.file_size),
                )
            del self._pending[existing.id]

        entry = QueueEntry(
            file_name=name,
            status=EntryStatus.READY if processed else EntryStatus.PENDING,
            speed=speed_of(processed) if processed else 1.0,
            processed_file_name=processed,
            file_size=sizes.get(name),
            versions=list(versions),
        )
        if existing is not None:
            entry.id = existing.id
        return entry

    # --- broadcast events ----------------------------------------------

    def apply_event(self, message: dict) -> bool:
        """Apply one broadcast message. Returns True if the queue changed."""
        try:
            event_type = EventType(message.get("type"))
        except ValueError:
            logger.debug("Ignoring unknown event: %s", message.get("type"))
            return False
        data = message.get("data") or {}

        if event_type == EventType.UPLOAD_RECEIVED:
            return self._on_upload(UploadReceived.model_validate(data))
        if event_type == EventType.JOB_STARTED:
            return self._on_job_started(JobStarted.model_validate(data))
        if event_type == EventType.JOB_SUCCEEDED:
            return self._on_job_succeeded(JobSucceeded.model_validate(data))
        if event_type == EventType.JOB_FAILED:
            return self._on_job_failed(JobFailed.model_validate(data))
        if event_type == EventType.FILE_DELETED:
            return self._on_file_deleted(FileDeleted.model_validate(data))
        return False

    def _on_upload(self, event: UploadReceived) -> bool:
        matches = self.find_by_name(event.fileName)
        if not matches:
            self.entries.append(QueueEntry(
                file_name=event.fileName,
                status=EntryStatus.PROCESSING,
                file_size=event.size,
            ))
            return True
        for entry in matches:
            entry.status = EntryStatus.PROCESSING
            if event.size is not None:
                entry.file_size = event.size
        return True

    def _on_job_started(self, event: JobStarted) -> bool:
        changed = False
        for entry in self.find_by_name(event.inputName):
            if entry.id in self._pending:
                continue
            entry.status = EntryStatus.PROCESSING
            changed = True
        return changed

    def _on_job_succeeded(self, event: JobSucceeded) -> bool:
        changed = False
        for entry in self.find_by_name(event.inputName):
            _add_version(entry, event.outputName)
            pending = self._pending.get(entry.id)
            if pending is not None and pending.requested_speed != event.appliedSpeed:
                # Our own request is still outstanding and its response decides
                changed = True
                continue
            if pending is not None and pending.awaiting_event:
                del self._pending[entry.id]
            entry.status = EntryStatus.READY
            entry.speed = event.appliedSpeed
            entry.processed_file_name = event.outputName
            changed = True
        return changed

    def _on_job_failed(self, event: JobFailed) -> bool:
        self.error_count += 1
        self.last_error = event.diagnostic
        if event.inputName is None:
            return False

        changed = False
        for entry in self.find_by_name(event.inputName):
            pending = self._pending.get(entry.id)
            if pending is not None:
                if pending.awaiting_event and event.requestedSpeed in (None, pending.requested_speed):
                    self.fail_speed_change(entry.id)
                    changed = True
                continue
            if entry.status != EntryStatus.PROCESSING:
                continue
            entry.status = EntryStatus.READY if entry.processed_file_name else EntryStatus.ERROR
            changed = True
        return changed

    def _on_file_deleted(self, event: FileDeleted) -> bool:
        changed = False
        deleted = set(event.deletedFiles)
        if event.fileName in deleted:
            for entry in list(self.find_by_name(event.fileName)):
                self._drop(entry.id)
                changed = True

        for entry in self.entries:
            if not deleted.intersection(entry.versions) and entry.processed_file_name not in deleted:
                continue
            entry.versions = [name for name in entry.versions if name not in deleted]
            fallback = entry.versions[-1] if entry.versions else None
            changed = True

            pending = self._pending.get(entry.id)
            if pending is not None and pending.processed_file_name in deleted:
                pending.processed_file_name = fallback
                pending.speed = speed_of(fallback) if fallback else 1.0
                if pending.status == EntryStatus.READY and fallback is None:
                    pending.status = EntryStatus.PENDING
            if entry.processed_file_name not in deleted:
                continue
            entry.processed_file_name = fallback
            if pending is None:
                entry.speed = speed_of(fallback) if fallback else 1.0
                entry.status = EntryStatus.READY if fallback else EntryStatus.PENDING
        return changed

    # --- local actions -------------------------------------------------

    def begin_speed_change(self, entry_id: str, speed: float) -> QueueEntry:
        """Optimistically show ``speed`` as processing, remembering the prior state."""
        entry = self.get(entry_id)
        if entry is None:
            raise KeyError(entry_id)
        if entry_id not in self._pending:
            self._pending[entry_id] = _Snapshot(
                status=entry.status,
                speed=entry.speed,
                processed_file_name=entry.processed_file_name,
                requested_speed=speed,
            )
        else:
            self._pending[entry_id].requested_speed = speed
            self._pending[entry_id].awaiting_event = False
        entry.speed = speed
        entry.status = EntryStatus.PROCESSING
        return entry

    def complete_speed_change(self, entry_id: str, output_name: str, speed: float) -> None:
        self._pending.pop(entry_id, None)
        entry = self.get(entry_id)
        if entry is None:
            return
        _add_version(entry, output_name)
        entry.status = EntryStatus.READY
        entry.speed = speed
        entry.processed_file_name = output_name

    def detach_speed_change(self, entry_id: str) -> None:
        """The response was lost, not refused: keep Processing until a broadcast settles it."""
        pending = self._pending.get(entry_id)
        if pending is not None:
            pending.awaiting_event = True

    def fail_speed_change(self, entry_id: str, reason: Optional[str] = None) -> None:
        """Restore the entry to its state before ``begin_speed_change``."""
        snapshot = self._pending.pop(entry_id, None)
        if reason:
            self.error_count += 1
            self.last_error = reason
        entry = self.get(entry_id)
        if entry is None or snapshot is None:
            return
        entry.status = snapshot.status
        if entry.status == EntryStatus.PROCESSING:
            entry.status = EntryStatus.READY if snapshot.processed_file_name else EntryStatus.PENDING
        entry.speed = snapshot.speed
        entry.processed_file_name = snapshot.processed_file_name

    def reorder(self, ordered_ids: List[str]) -> None:
        """Apply a local permutation. The selection follows its entry."""
        if sorted(ordered_ids) != sorted(entry.id for entry in self.entries):
            raise ValueError("Reorder must be a permutation of the current entries")
        selected = self.current.id if self.current else None
        by_id = {entry.id: entry for entry in self.entries}
        self.entries = [by_id[entry_id] for entry_id in ordered_ids]
        self._reselect(selected)

    def move(self, entry_id: str, new_index: int) -> None:
        ids = [entry.id for entry in self.entries]
        if entry_id not in ids:
            raise KeyError(entry_id)
        ids.remove(entry_id)
        new_index = max(0, min(new_index, len(ids)))
        ids.insert(new_index, entry_id)
        self.reorder(ids)

    def remove_confirmed(self, entry_id: str) -> bool:
        """Remove an entry after the server confirmed its deletion."""
        return self._drop(entry_id)

    def select(self, entry_id: str) -> None:
        index = self.index_of(entry_id)
        if index != -1:
            self.current_index = index

    def next(self) -> None:
        if self.current_index < len(self.entries) - 1:
            self.current_index += 1

    def previous(self) -> None:
        if self.current_index > 0:
            self.current_index -= 1

    def _drop(self, entry_id: str) -> bool:
        index = self.index_of(entry_id)
        if index == -1:
            return False
        del self.entries[index]
        self._pending.pop(entry_id, None)
        if index <= self.current_index and self.current_index > 0:
            self.current_index -= 1
        return True

    def _reselect(self, entry_id: Optional[str]) -> None:
        if entry_id is not None:
            index = self.index_of(entry_id)
            if index != -1:
                self.current_index = index
                return
        self.current_index = min(self.current_index, max(len(self.entries) - 1, 0))


def _add_version(entry: QueueEntry, name: str) -> None:
    """Record ``name`` as the newest Derived version of ``entry``."""
    if name == entry.file_name:
        return
    if name in entry.versions:
        entry.versions.remove(name)
    entry.versions.append(name)


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    detail = body.get("detail", body) if isinstance(body, dict) else body
    if isinstance(detail, dict):
        return detail.get("message") or detail.get("error") or str(detail)
    return str(detail)


class QueueClient:
    """Keeps a ``QueueState`` in sync with a server.

    Example:
        >>> client = QueueClient("http://localhost:3000")
        >>> await client.refresh()
        >>> asyncio.create_task(client.listen())
        >>> await client.change_speed(client.state.entries[0].id, 1.5)
    """

    def __init__(
        self,
        base_url: str,
        http: Optional[httpx.AsyncClient] = None,
        ws_url: Optional[str] = None,
        state: Optional[QueueState] = None,
        retry_delay_s: float = 2.0,
        read_timeout_s: Optional[float] = None,
    ):
        self.base_url = base_url.rstrip("/")
        # change-speed answers only after the whole encode, so reads are
        # unbounded unless asked otherwise
        self.http = http or httpx.AsyncClient(
            base_url=self.base_url, timeout=httpx.Timeout(read_timeout_s, connect=10.0)
        )
        self.ws_url = ws_url or self.base_url.replace("http", "ws", 1) + "/ws"
        self.state = state or QueueState()
        self.retry_delay_s = retry_delay_s

    async def aclose(self) -> None:
        await self.http.aclose()

    # --- requests ------------------------------------------------------

    async def refresh(self) -> None:
        """Replace the local view with the server's full listing."""
        response = await self.http.get("/files")
        response.raise_for_status()
        self.state.load_listing(response.json())

    async def upload(self, file_name: str, content: bytes, speed: Optional[float] = None) -> str:
        """Upload a file. The queue entry appears via the upload event."""
        data = {"speed": str(speed)} if speed is not None else {}
        response = await self.http.post(
            "/my_files", files={"myFile": (file_name, content)}, data=data
        )
        if response.is_error:
            raise httpx.HTTPStatusError(
                _error_message(response), request=response.request, response=response
            )
        return response.text

    async def change_speed(self, entry_id: str, speed: float) -> bool:
        """Request a speed change. True only once the server confirmed it.

        If the response times out the job may still finish on the server,
        so the entry stays Processing and the job's broadcast settles it.
        """
        entry = self.state.begin_speed_change(entry_id, speed)
        try:
            response = await self.http.post(
                "/my_files/change-speed", json={"fileName": entry.file_name, "speed": speed}
            )
        except (httpx.ReadTimeout, httpx.WriteTimeout) as e:
            logger.warning("No response for %s at %sx, waiting for events: %s",
                           entry.file_name, speed, e)
            self.state.detach_speed_change(entry_id)
            return False
        except httpx.HTTPError as e:
            logger.error("Speed change error for %s: %s", entry.file_name, e)
            self.state.fail_speed_change(entry_id, str(e))
            return False

        if response.is_success:
            body = response.json()
            self.state.complete_speed_change(entry_id, body["outputFilename"], body["speed"])
            return True

        self.state.fail_speed_change(entry_id, _error_message(response))
        return False

    async def delete(self, entry_id: str) -> List[str]:
        """Delete an entry's file on the server; returns the files removed."""
        entry = self.state.get(entry_id)
        if entry is None:
            return []
        try:
            response = await self.http.request(
                "DELETE", "/my_files/delete", json={"fileName": entry.file_name}
            )
        except httpx.HTTPError as e:
            logger.error("Delete error for %s: %s", entry.file_name, e)
            self.state.last_error = str(e)
            return []

        if response.status_code in (200, 207):
            deleted = response.json().get("deletedFiles", [])
            if entry.file_name in deleted:
                self.state.remove_confirmed(entry_id)
            if response.status_code == 207:
                self.state.last_error = _error_message(response)
            return deleted

        self.state.last_error = _error_message(response)
        return []

    # --- events --------------------------------------------------------

    def handle_message(self, raw: Union[str, bytes, dict]) -> bool:
        message = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
        return self.state.apply_event(message)

    async def consume(self, messages: AsyncIterable) -> None:
        """Apply messages strictly in arrival order."""
        async for raw in messages:
            try:
                self.handle_message(raw)
            except ValueError as e:
                logger.warning("Dropping malformed event: %s", e)

    async def listen(self, reconnect: bool = True) -> None:
        """Follow the event stream, re-fetching the full listing on each connect."""
        while True:
            try:
                async with websockets.connect(self.ws_url) as connection:
                    await self.refresh()
                    await self.consume(connection)
            except (WebSocketException, OSError, httpx.HTTPError) as e:
                logger.warning("Event stream lost: %s", e)
            if not reconnect:
                return
            await asyncio.sleep(self.retry_delay_s)
