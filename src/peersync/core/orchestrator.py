"""Sync orchestrator: drives sessions between this device and one peer."""

import asyncio
import inspect
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple, Union

from .catalog import CatalogError, FileCatalog, FileRecord, PartialReadWarning, TransferStatus, diff
from .conflicts import ConflictRecord, Resolution, Side
from .errors import (
    BusyError,
    InvalidTransitionError,
    NoPeerError,
    NothingToSyncError,
    SessionError,
)
from .events import ErrorInfo, EventChannel, EventType
from .session import (
    TERMINAL_STATUSES,
    SessionRole,
    SessionStateMachine,
    SessionStatus,
    SyncSession,
    new_session_id,
)
from ..config.settings import SyncSettings, get_settings
from ..filesystem.base import BaseFileSystem, FileSystemError
from ..protocol.codec import MalformedMessageError, ProtocolCodec
from ..protocol.messages import (
    BaseMessage,
    ConflictDetected,
    ConflictResolutionMessage,
    FileRecordPayload,
    FileTransferComplete,
    FileTransferStart,
    SyncAccepted,
    SyncCancelled,
    SyncPaused,
    SyncRequest,
    SyncResumed,
)
from ..transport.base import BaseTransport, PeerDisconnectedError, SendFailedError, TransportListener
from ..utils.logging import get_logger, session_context, timed

AcceptPolicy = Callable[[SyncRequest], Union[bool, Awaitable[bool]]]
ConflictPolicy = Callable[[ConflictRecord], Union[Optional[Resolution], Awaitable[Optional[Resolution]]]]

OUTGOING = "outgoing"
INCOMING = "incoming"


class SyncOrchestrator(TransportListener):
    """Ties catalogs, conflicts, the session state machine and the protocol together.

    One orchestrator runs at most one session at a time, against the peer
    attached with ``connect_peer``. All session state is read and changed
    under a single asyncio lock; the transfer loop holds it for one whole file
    (start message, payload, complete message, counters) and releases it
    between files, so pause and cancel take effect between files.

    It is the only component that talks to the transport or publishes events.
    Public operations raise the matching exception and also publish an
    ``error`` event with an ErrorInfo.
    """

    def __init__(
        self,
        transport: BaseTransport,
        filesystem: BaseFileSystem,
        events: Optional[EventChannel] = None,
        codec: Optional[ProtocolCodec] = None,
        settings: Optional[SyncSettings] = None,
        target_path: Optional[str] = None,
        display_name: str = "peersync",
        accept_policy: Optional[AcceptPolicy] = None,
        conflict_policy: Optional[ConflictPolicy] = None
    ):
        """Initialize the orchestrator.

        Args:
            transport: Connection to the peer; this orchestrator binds itself
                as its listener
            filesystem: Local filesystem capability
            events: Channel to publish to (a new one by default)
            codec: Message codec
            settings: Sync defaults (the process-wide settings by default)
            target_path: Folder incoming syncs write into (defaults to
                ``settings.sync_directory``)
            display_name: Name announced to the peer in sync requests
            accept_policy: Decides whether to accept an incoming request.
                It is awaited with the session lock held, from the task
                delivering inbound traffic, so no other message is handled
                until it returns. An interactive prompt should time out.
            conflict_policy: Decides a conflict; None defers it to
                ``resolve_conflict``. Awaited under the same lock as
                ``accept_policy``, once per conflict
        """
        self.transport = transport
        self.filesystem = filesystem
        self.events = events or EventChannel()
        self.codec = codec or ProtocolCodec()
        self.settings = settings or get_settings().sync
        self.target_path = target_path or self.settings.sync_directory
        self.display_name = display_name
        self.accept_policy = accept_policy or self._default_accept_policy
        self.conflict_policy = conflict_policy or self._default_conflict_policy
        self.logger = get_logger(self.__class__.__name__)

        self._lock = asyncio.Lock()
        self._done = asyncio.Event()
        self._done.set()

        self._peer_id: Optional[str] = None
        self._peer_name: Optional[str] = None

        self._machine: Optional[SessionStateMachine] = None
        self._finished: Optional[SessionStateMachine] = None
        self._transfer_task: Optional[asyncio.Task] = None

        self._receiving: Optional[Tuple[SessionStateMachine, str]] = None
        self._written: Dict[str, bool] = {}
        self._file_progress: Dict[str, float] = {}
        self._deletions: Tuple[str, ...] = ()

        self._handlers = {
            SyncAccepted: self._on_sync_accepted,
            SyncPaused: self._on_sync_paused,
            SyncResumed: self._on_sync_resumed,
            SyncCancelled: self._on_sync_cancelled,
            ConflictDetected: self._on_conflict_detected,
            ConflictResolutionMessage: self._on_conflict_resolution,
            FileTransferStart: self._on_file_transfer_start,
            FileTransferComplete: self._on_file_transfer_complete,
        }

        self.transport.bind(self)

    # Policies

    def _default_accept_policy(self, request: SyncRequest) -> bool:
        return self.settings.auto_accept

    def _default_conflict_policy(self, record: ConflictRecord) -> Optional[Resolution]:
        return Resolution(self.settings.conflict_strategy)

    @staticmethod
    async def _call_policy(policy: Callable[[Any], Any], argument: Any) -> Any:
        result = policy(argument)
        if inspect.isawaitable(result):
            result = await result
        return result

    # Peer and session state

    def connect_peer(self, peer_id: str, display_name: Optional[str] = None) -> None:
        """Attach the peer this orchestrator syncs with."""
        self._peer_id = peer_id
        self._peer_name = display_name or peer_id
        self.logger.info("Peer connected", peer_id=peer_id, display_name=self._peer_name)

    @property
    def peer_id(self) -> Optional[str]:
        return self._peer_id

    @property
    def is_connected(self) -> bool:
        return self._peer_id is not None

    @property
    def machine(self) -> Optional[SessionStateMachine]:
        """State machine of the current session, or of the last finished one."""
        return self._machine or self._finished

    @property
    def session(self) -> Optional[SyncSession]:
        machine = self.machine
        return machine.session if machine else None

    @property
    def status(self) -> SessionStatus:
        machine = self.machine
        return machine.status if machine else SessionStatus.IDLE

    @property
    def is_busy(self) -> bool:
        return self._machine is not None and self._machine.is_active

    def file_progress(self, relative_path: str) -> float:
        """0.0 until a file finishes, 1.0 once it was transferred successfully."""
        return self._file_progress.get(relative_path, 0.0)

    def status_snapshot(self) -> Dict[str, Any]:
        machine = self.machine
        snapshot: Dict[str, Any] = {
            "peer_id": self._peer_id,
            "peer_display_name": self._peer_name,
            "status": self.status.value,
        }
        if machine is not None:
            snapshot.update(machine.snapshot())
            snapshot["session"] = machine.session.to_dict()
            snapshot["file_progress"] = dict(self._file_progress)
        return snapshot

    async def wait_until_finished(self, timeout: Optional[float] = None) -> SessionStatus:
        """Wait until no session is active and the transfer loop has stopped."""
        await asyncio.wait_for(self._done.wait(), timeout=timeout)
        task = self._transfer_task
        if task is not None and not task.done():
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        return self.status

    async def close(self) -> None:
        """Stop the transfer loop, if one is running."""
        task = self._transfer_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._transfer_task = None

    def _new_machine(self, session: SyncSession) -> SessionStateMachine:
        machine = SessionStateMachine(session)
        machine.on_transition = lambda old, new: self._on_status_changed(machine, old, new)

        self._machine = machine
        self._receiving = None
        self._written = {}
        self._file_progress = {}
        self._deletions = ()
        self._done.clear()
        return machine

    def _retire(self, machine: SessionStateMachine) -> None:
        if self._machine is machine:
            self._machine = None
            self._finished = machine
            self._receiving = None
            self._done.set()
            self.logger.info(
                "Session finished",
                session_id=machine.session.id,
                status=machine.status.value,
                processed_files=machine.processed_files,
                total_files=machine.total_files
            )

    def _on_status_changed(self, machine: SessionStateMachine, old: SessionStatus, new: SessionStatus) -> None:
        self.events.emit(
            EventType.STATUS_CHANGED,
            machine.session.id,
            old_status=old.value,
            new_status=new.value
        )
        if new is SessionStatus.COMPLETED:
            self._mirror_deletions(machine)
        if new in TERMINAL_STATUSES or new is SessionStatus.IDLE:
            self._retire(machine)

    def _report(self, category: str, error: Exception, session_id: Optional[str] = None) -> ErrorInfo:
        info = ErrorInfo.from_exception(category, error, session_id)
        self.logger.warning(
            "Sync error",
            category=category,
            code=info.code,
            message=info.message,
            session_id=session_id
        )
        self.events.emit(EventType.ERROR, session_id, error=info)
        return info

    def _publish_progress(self, machine: SessionStateMachine) -> None:
        progress = machine.snapshot()
        session_id = progress.pop("session_id")
        self.events.emit(EventType.PROGRESS, session_id, **progress)

    # Outbound

    async def _send(self, message: BaseMessage) -> bool:
        peer_id = self._peer_id
        if peer_id is None:
            self.logger.warning("No peer to send to", message_type=message.type)
            return False
        try:
            sent = await self.transport.send_message(peer_id, self.codec.encode(message))
        except Exception as e:
            self.logger.error("Transport raised while sending", message_type=message.type, error=str(e))
            sent = False
        if not sent:
            self.logger.warning("Message not delivered", message_type=message.type, session_id=message.session_id)
        return sent

    async def _send_control(self, machine: SessionStateMachine, message: BaseMessage) -> bool:
        """Send a control message, reporting SendFailedError if it does not go out."""
        sent = await self._send(message)
        if not sent:
            self._report(
                "transport",
                SendFailedError(f"Could not send {message.type} to {self._peer_id}"),
                machine.session.id
            )
        return sent

    async def _send_file(self, absolute_path: str) -> bool:
        peer_id = self._peer_id
        if peer_id is None:
            return False
        try:
            return await self.transport.send_file(peer_id, absolute_path)
        except Exception as e:
            self.logger.error("Transport raised while sending file", path=absolute_path, error=str(e))
            return False

    # Public operations

    @timed("sync.start")
    async def start_sync(
        self,
        source_path: str,
        two_way: bool = False,
        target_path: Optional[str] = None
    ) -> SyncSession:
        """Scan ``source_path`` and offer it to the connected peer.

        Returns once the request is sent; the transfer starts when the peer
        accepts.

        Raises:
            NoPeerError: If no peer is connected
            BusyError: If a session is already active
            CatalogNotFoundError: If ``source_path`` does not exist
            NothingToSyncError: If ``source_path`` holds no files
            SendFailedError: If the request could not be sent
        """
        async with self._lock:
            if self._peer_id is None:
                error = NoPeerError("No peer connected")
                self._report("session", error)
                raise error
            if self.is_busy:
                error = BusyError(f"Session {self._machine.session.id} is {self._machine.status.value}")
                self._report("session", error, self._machine.session.id)
                raise error

            session = SyncSession(
                id=new_session_id(),
                peer_id=self._peer_id,
                peer_display_name=self._peer_name or self._peer_id,
                source_path=source_path,
                target_path=target_path or "",
                two_way=two_way,
                role=SessionRole.INITIATOR
            )
            machine = self._new_machine(session)
            machine.begin_scan()

        self.logger.info("Starting sync", session_id=session.id, source_path=source_path, two_way=two_way)

        try:
            catalog = await self._build_catalog(source_path)
        except CatalogError as e:
            async with self._lock:
                machine.abort_scan()
            self._report("catalog", e, session.id)
            raise

        async with self._lock:
            if machine.status is not SessionStatus.SCANNING:
                raise InvalidTransitionError(f"Session {session.id} left scanning while building the catalog")

            try:
                machine.catalog_ready(catalog)
            except NothingToSyncError as e:
                self._report("session", e, session.id)
                raise

            request = SyncRequest(
                session_id=session.id,
                source_path=source_path,
                two_way=two_way,
                files=[FileRecordPayload.from_record(r) for r in catalog],
                display_name=self.display_name
            )
            if not await self._send(request):
                machine.abandon_request()
                error = SendFailedError(f"Could not send sync request to {session.peer_id}")
                self._report("transport", error, session.id)
                raise error

        self.logger.info("Sync requested", session_id=session.id, files=len(catalog))
        return session

    async def _build_catalog(self, folder_path: str) -> FileCatalog:
        catalog = await asyncio.to_thread(
            FileCatalog.build,
            folder_path,
            self.filesystem,
            self.settings.compute_hashes,
            self.settings.exclude_patterns
        )
        if catalog.warnings:
            self._report(
                "catalog",
                PartialReadWarning(f"{catalog.warnings} entries under {folder_path} could not be read"),
                self._machine.session.id if self._machine else None
            )
        return catalog

    @timed("sync.accept")
    async def accept_incoming(self, request: SyncRequest) -> Optional[SyncSession]:
        """Answer a peer's sync request.

        Diffs the offered files against the local target folder, settles
        two-way conflicts, replies ``sync_accepted`` and starts the transfer.
        A declined request is answered with ``sync_cancelled``.

        Returns:
            The new session, or None if the request was declined, repeats a
            session this side already knows, or the acceptance could not be
            sent

        Raises:
            NoPeerError: If no peer is connected
            BusyError: If another session is already active (the peer is told)
        """
        async with self._lock:
            if self._peer_id is None:
                error = NoPeerError("No peer connected")
                self._report("session", error, request.session_id)
                raise error
            known = self.machine
            if known is not None and known.session.id == request.session_id:
                self.logger.debug("Dropping duplicate sync request", session_id=request.session_id)
                return None
            if self.is_busy:
                await self._send(SyncCancelled(session_id=request.session_id, reason="busy"))
                error = BusyError(f"Session {self._machine.session.id} is {self._machine.status.value}")
                self._report("session", error, request.session_id)
                raise error

            if not await self._call_policy(self.accept_policy, request):
                self.logger.info("Sync request declined", session_id=request.session_id)
                await self._send(SyncCancelled(session_id=request.session_id, reason="declined"))
                return None

            session = SyncSession(
                id=request.session_id,
                peer_id=self._peer_id,
                peer_display_name=request.display_name or self._peer_name or self._peer_id,
                source_path=request.source_path,
                target_path=self.target_path,
                two_way=request.two_way,
                role=SessionRole.RESPONDER
            )
            machine = self._new_machine(session)

            offered = FileCatalog.from_records(request.records(), root=request.source_path)
            local = await self._scan_target(self.target_path)

            forward = diff(offered, local)
            requested: Set[str] = set(forward.added_or_modified)
            outgoing: Set[str] = set()

            if request.two_way:
                outgoing = set(diff(local, offered).added_or_modified)
                for path in sorted(requested & outgoing):
                    keep_local = await self._settle_conflict(machine, local.get(path), offered.get(path))
                    if keep_local is None:
                        requested.discard(path)
                        outgoing.discard(path)
                    elif keep_local:
                        requested.discard(path)
                    else:
                        outgoing.discard(path)
            else:
                self._deletions = tuple(
                    local.get(path).absolute_path for path in forward.deleted_in_source
                )

            machine.prepare_incoming(offered.with_selection(requested))
            machine.set_outgoing(local.subset(outgoing))

            accepted = SyncAccepted(
                session_id=session.id,
                requested=sorted(requested),
                files=[FileRecordPayload.from_record(r) for r in machine.session.files] if request.two_way else None
            )
            if not await self._send_control(machine, accepted):
                machine.abandon_request()
                return None

            machine.start_transfer()
            self._publish_progress(machine)
            self._start_transfer_task(machine)

        self.logger.info(
            "Sync accepted",
            session_id=session.id,
            requested=len(requested),
            outgoing=len(outgoing),
            unchanged=len(forward.unchanged)
        )
        return session

    async def _scan_target(self, folder_path: str) -> FileCatalog:
        if not self.filesystem.exists(folder_path):
            return FileCatalog(root=folder_path)
        return await self._build_catalog(folder_path)

    async def _settle_conflict(
        self,
        machine: SessionStateMachine,
        local: Optional[FileRecord],
        remote: Optional[FileRecord]
    ) -> Optional[bool]:
        """Detect, announce and decide one conflict on the responder.

        Returns True if the local copy wins, False if the remote one does,
        None if there is no conflict to settle now (identical or deferred).
        """
        record = machine.conflicts.detect(local, remote)
        if record is None:
            return None

        record = machine.conflicts.register(record)
        await self._send_control(machine, ConflictDetected(
            session_id=machine.session.id,
            path=record.relative_path,
            local_version=FileRecordPayload.from_record(record.local_version),
            remote_version=FileRecordPayload.from_record(record.remote_version)
        ))
        self.events.emit(EventType.CONFLICT, machine.session.id, path=record.relative_path, conflict=record)

        strategy = await self._call_policy(self.conflict_policy, record)
        if strategy is None or strategy is Resolution.UNRESOLVED:
            machine.conflicts.defer(record.relative_path)
            return None

        machine.conflicts.resolve(record, Resolution(strategy))
        resolved = await self._announce_resolution(machine, record.relative_path)
        return resolved.winner is Side.LOCAL

    async def _announce_resolution(self, machine: SessionStateMachine, path: str) -> ConflictRecord:
        resolved = machine.conflicts.get(path)
        await self._send_control(machine, ConflictResolutionMessage(
            session_id=machine.session.id,
            path=path,
            resolution=resolved.effective_resolution
        ))
        self.events.emit(
            EventType.CONFLICT,
            machine.session.id,
            path=path,
            conflict=resolved,
            resolution=resolved.resolution.value
        )
        return resolved

    async def pause(self) -> None:
        """Pause the transfer; the file in flight finishes first.

        Raises:
            InvalidTransitionError: If the session is not syncing
        """
        async with self._lock:
            machine = self._require_machine("pause")
            self._transition(machine, machine.pause)
            await self._send_control(machine, SyncPaused(session_id=machine.session.id))

    async def resume(self) -> None:
        """Resume a paused transfer.

        Raises:
            InvalidTransitionError: If the session is not paused
        """
        async with self._lock:
            machine = self._require_machine("resume")
            self._transition(machine, machine.resume)
            await self._send_control(machine, SyncResumed(session_id=machine.session.id))
            self._restart_transfer(machine)

    async def cancel(self) -> None:
        """Cancel the session; no further files are sent.

        Raises:
            InvalidTransitionError: If the session is not syncing or paused
        """
        async with self._lock:
            machine = self._require_machine("cancel")
            self._transition(machine, machine.cancel)
            await self._send_control(machine, SyncCancelled(session_id=machine.session.id, reason="cancelled"))

    async def resolve_conflict(self, path: str, resolution: Resolution) -> FileRecord:
        """Settle a conflict by hand and tell the peer.

        Works for conflicts of the current session and, for deferred ones,
        of the last finished session. Settling a deferred conflict moves the
        winning copy: whichever side holds it sends it after the resolution.
        Repeating a settled decision returns the same winner and moves
        nothing.

        Returns:
            The winning version

        Raises:
            InvalidTransitionError: If there is no such conflict, or it was
                already settled in favour of the other side
            ValueError: If ``resolution`` is ``unresolved``
        """
        async with self._lock:
            machine = self.machine
            record = machine.conflicts.get(path) if machine else None
            if record is None:
                error = InvalidTransitionError(f"No conflict on {path}")
                self._report("session", error, machine.session.id if machine else None)
                raise error

            try:
                winner = machine.conflicts.resolve(record, resolution)
            except (InvalidTransitionError, ValueError) as e:
                self._report("session", e, machine.session.id)
                raise

            if record.is_resolved:
                # Same winner again: nothing to announce
                return winner

            await self._announce_resolution(machine, path)
            await self._move_deferred_winner(machine, path)
            return winner

    async def _move_deferred_winner(self, machine: SessionStateMachine, path: str) -> None:
        """Send our copy of a deferred conflict once it has won; the peer sends theirs otherwise."""
        record = machine.conflicts.get(path)
        if record is None or not record.deferred or record.winner is not Side.LOCAL:
            return

        session_id = machine.session.id
        own = machine.session.files.get(path)
        absolute_path = own.absolute_path if own is not None else record.local_version.absolute_path
        size_bytes = record.local_version.size_bytes

        self.events.emit(
            EventType.FILE_STARTED, session_id,
            path=path, size_bytes=size_bytes, direction=OUTGOING
        )

        success = False
        if await self._send(FileTransferStart(session_id=session_id, path=path, size_bytes=size_bytes)):
            success = await self._send_file(absolute_path)
        await self._send(FileTransferComplete(session_id=session_id, path=path, success=success))

        self.logger.info("Sent conflict winner", session_id=session_id, path=path, success=success)
        self.events.emit(
            EventType.FILE_COMPLETED, session_id,
            path=path, success=success, direction=OUTGOING, conflict=True
        )
        if not success:
            self._report("transport", SendFailedError(f"Failed to send {path}"), session_id)

    def _require_machine(self, action: str) -> SessionStateMachine:
        if self._machine is None:
            error = InvalidTransitionError(f"Cannot {action} while {self.status.value}")
            self._report("session", error, self.session.id if self.session else None)
            raise error
        return self._machine

    def _transition(self, machine: SessionStateMachine, step: Callable[[], None]) -> None:
        try:
            step()
        except SessionError as e:
            self._report("session", e, machine.session.id)
            raise

    # Transfer loop

    def _start_transfer_task(self, machine: SessionStateMachine) -> None:
        self._transfer_task = asyncio.get_running_loop().create_task(self._run_transfer(machine))

    def _restart_transfer(self, machine: SessionStateMachine) -> None:
        if machine.status is SessionStatus.SYNCING and self._transfer_task is None:
            self._start_transfer_task(machine)

    def _next_outgoing(self, machine: SessionStateMachine) -> Optional[FileRecord]:
        for record in machine.selected_files():
            if record.transfer_status is TransferStatus.PENDING:
                return record
        return None

    async def _run_transfer(self, machine: SessionStateMachine) -> None:
        """Send the selected files in catalog order while the session is syncing."""
        try:
            with session_context(machine.session.id, role=machine.session.role.value):
                while True:
                    async with self._lock:
                        record = self._next_outgoing(machine) if machine.status is SessionStatus.SYNCING else None
                        if record is None:
                            machine.maybe_complete()
                            if self._transfer_task is asyncio.current_task():
                                self._transfer_task = None
                            return
                        await self._transfer_one(machine, record)
                    await asyncio.sleep(0)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.error("Transfer loop failed", session_id=machine.session.id, error=str(e))
            async with self._lock:
                if self._transfer_task is asyncio.current_task():
                    self._transfer_task = None
                if machine.is_active:
                    machine.fail()
            self._report("session", SessionError(f"Transfer loop failed: {e}"), machine.session.id)

    async def _transfer_one(self, machine: SessionStateMachine, record: FileRecord) -> None:
        session_id = machine.session.id
        path = record.relative_path

        machine.mark_in_progress(path)
        self._file_progress[path] = 0.0
        self.events.emit(
            EventType.FILE_STARTED, session_id,
            path=path, size_bytes=record.size_bytes, direction=OUTGOING
        )

        success = False
        if await self._send(FileTransferStart(session_id=session_id, path=path, size_bytes=record.size_bytes)):
            success = await self._send_file(record.absolute_path)
        await self._send(FileTransferComplete(session_id=session_id, path=path, success=success))

        self._count_file(machine, path, success, OUTGOING)
        if not success:
            self._report("transport", SendFailedError(f"Failed to send {path}"), session_id)

        machine.maybe_complete()

    def _count_file(self, machine: SessionStateMachine, path: str, success: bool, direction: str) -> None:
        if direction == OUTGOING:
            machine.record_sent(path, success)
        self._file_progress[path] = 1.0 if success else 0.0

        self.logger.info(
            "File processed",
            session_id=machine.session.id,
            path=path,
            direction=direction,
            success=success,
            processed_files=machine.processed_files,
            total_files=machine.total_files
        )
        self.events.emit(
            EventType.FILE_COMPLETED, machine.session.id,
            path=path, success=success, direction=direction
        )
        self._publish_progress(machine)

    def _mirror_deletions(self, machine: SessionStateMachine) -> None:
        if not self.settings.mirror_deletions or not self._deletions:
            return
        if machine.session.role is not SessionRole.RESPONDER or machine.session.two_way:
            return

        deleted = 0
        for absolute_path in self._deletions:
            if self.filesystem.delete(absolute_path):
                deleted += 1
        self.logger.info("Mirrored deletions", session_id=machine.session.id, deleted=deleted)
        self._deletions = ()

    # Inbound

    async def handle_bytes(self, peer_id: str, data: bytes) -> None:
        if peer_id != self._peer_id:
            self.logger.warning("Dropping message from unknown peer", peer_id=peer_id)
            return

        try:
            message = self.codec.decode(data)
        except MalformedMessageError as e:
            self.logger.warning("Dropping malformed message", peer_id=peer_id, error=str(e))
            return
        if message is None:
            return

        if isinstance(message, SyncRequest):
            try:
                await self.accept_incoming(message)
            except SessionError as e:
                self.logger.info("Incoming sync refused", session_id=message.session_id, reason=e.code)
            return

        async with self._lock:
            machine = self._machine_for(message)
            if machine is None:
                self.logger.debug(
                    "Dropping stale message",
                    message_type=message.type,
                    session_id=message.session_id
                )
                return
            with session_context(message.session_id, role=machine.session.role.value):
                await self._handlers[type(message)](machine, message)

    def _machine_for(self, message: BaseMessage) -> Optional[SessionStateMachine]:
        if self._machine is not None and self._machine.session.id == message.session_id:
            return self._machine
        # Deferred conflicts may still be settled, and their winner moved, after the session ended
        if (
            isinstance(message, (ConflictResolutionMessage, FileTransferStart, FileTransferComplete))
            and self._finished is not None
            and self._finished.session.id == message.session_id
        ):
            return self._finished
        return None

    async def _on_sync_accepted(self, machine: SessionStateMachine, message: SyncAccepted) -> None:
        if machine.session.role is not SessionRole.INITIATOR or machine.status is not SessionStatus.PREPARING:
            self.logger.warning("Unexpected sync_accepted", session_id=machine.session.id, status=machine.status.value)
            return

        if message.requested is not None:
            machine.restrict_selection(p for p in message.requested if p in machine.session.files)
        if machine.session.two_way and message.files:
            incoming = FileCatalog.from_records(message.records(), root=machine.session.source_path)
            machine.set_incoming(incoming)

        # Conflicts in neither direction were deferred by the peer
        settled_early = []
        if message.requested is not None:
            planned = set(message.requested) | set(machine.session.incoming.paths())
            for record in machine.conflicts.pending() + machine.conflicts.resolved():
                if record.relative_path not in planned:
                    machine.conflicts.defer(record.relative_path)
                    if record.is_resolved:
                        settled_early.append(record.relative_path)

        machine.start_transfer()
        self._publish_progress(machine)
        for path in settled_early:
            await self._move_deferred_winner(machine, path)
        self._start_transfer_task(machine)

    async def _on_sync_paused(self, machine: SessionStateMachine, message: SyncPaused) -> None:
        if machine.status is SessionStatus.SYNCING:
            machine.pause()

    async def _on_sync_resumed(self, machine: SessionStateMachine, message: SyncResumed) -> None:
        if machine.status is SessionStatus.PAUSED:
            machine.resume()
            self._restart_transfer(machine)

    async def _on_sync_cancelled(self, machine: SessionStateMachine, message: SyncCancelled) -> None:
        # A busy peer only ever refuses a request it has not accepted
        if message.reason == "busy" and machine.status is not SessionStatus.PREPARING:
            self.logger.warning(
                "Ignoring busy refusal for a running session",
                session_id=machine.session.id,
                status=machine.status.value
            )
            return

        self.logger.info("Peer cancelled the session", session_id=machine.session.id, reason=message.reason)
        if machine.status is SessionStatus.PREPARING:
            machine.decline()
        elif machine.status in (SessionStatus.SYNCING, SessionStatus.PAUSED):
            machine.cancel()

    async def _on_conflict_detected(self, machine: SessionStateMachine, message: ConflictDetected) -> None:
        # The sender's local copy is our remote one
        record = ConflictRecord(
            relative_path=message.path,
            local_version=message.remote_version.to_record(),
            remote_version=message.local_version.to_record()
        )
        record = machine.conflicts.register(record)
        self.events.emit(EventType.CONFLICT, machine.session.id, path=message.path, conflict=record)

    async def _on_conflict_resolution(self, machine: SessionStateMachine, message: ConflictResolutionMessage) -> None:
        record = machine.conflicts.get(message.path)
        if record is None:
            self.logger.warning("Resolution for unknown conflict", session_id=machine.session.id, path=message.path)
            return
        if record.is_resolved:
            # Repeats never move files again
            try:
                machine.conflicts.resolve(record, message.resolution.mirrored())
            except InvalidTransitionError as e:
                self._report("session", e, machine.session.id)
            return

        try:
            machine.conflicts.resolve(record, message.resolution.mirrored())
        except InvalidTransitionError as e:
            self._report("session", e, machine.session.id)
            return

        resolved = machine.conflicts.get(message.path)
        self.events.emit(
            EventType.CONFLICT,
            machine.session.id,
            path=message.path,
            conflict=resolved,
            resolution=resolved.resolution.value
        )
        await self._move_deferred_winner(machine, message.path)

    @staticmethod
    def _is_conflict_winner(machine: SessionStateMachine, path: str) -> bool:
        """True if ``path`` is a settled deferred conflict whose winner the peer holds."""
        record = machine.conflicts.get(path)
        return record is not None and record.deferred and record.winner is Side.REMOTE

    async def _on_file_transfer_start(self, machine: SessionStateMachine, message: FileTransferStart) -> None:
        path = message.path
        conflict_winner = self._is_conflict_winner(machine, path)
        if not conflict_winner:
            if machine.status not in (SessionStatus.SYNCING, SessionStatus.PAUSED):
                self.logger.warning("Transfer start outside a transfer", session_id=machine.session.id, path=path)
                return
            if not machine.expects_incoming(path):
                self.logger.warning("Transfer start for unexpected file", session_id=machine.session.id, path=path)
                return
            machine.mark_receiving(path)
            self._file_progress[path] = 0.0

        self._receiving = (machine, path)
        self.events.emit(
            EventType.FILE_STARTED, machine.session.id,
            path=path, size_bytes=message.size_bytes, direction=INCOMING
        )

    async def _on_file_transfer_complete(self, machine: SessionStateMachine, message: FileTransferComplete) -> None:
        path = message.path
        if self._receiving == (machine, path):
            self._receiving = None

        success = message.success and self._written.pop(path, False)

        if self._is_conflict_winner(machine, path):
            # Outside the session's counters
            self.logger.info("Received conflict winner", session_id=machine.session.id, path=path, success=success)
            self.events.emit(
                EventType.FILE_COMPLETED, machine.session.id,
                path=path, success=success, direction=INCOMING, conflict=True
            )
            return

        if not machine.record_received(path, success):
            return

        self._count_file(machine, path, success, INCOMING)
        machine.maybe_complete()

    @staticmethod
    def _incoming_modified_at(machine: SessionStateMachine, path: str) -> Optional[datetime]:
        record = machine.session.incoming.get(path)
        if record is None:
            conflict = machine.conflicts.get(path)
            record = conflict.remote_version if conflict is not None else None
        return record.modified_at if record is not None else None

    async def handle_file(self, peer_id: str, data: bytes) -> None:
        if peer_id != self._peer_id:
            self.logger.warning("Dropping file from unknown peer", peer_id=peer_id)
            return

        async with self._lock:
            if self._receiving is None:
                self.logger.warning("Dropping file payload with no transfer in progress", size_bytes=len(data))
                return
            machine, path = self._receiving

            try:
                written = await asyncio.to_thread(
                    self.filesystem.copy_into,
                    machine.session.local_root,
                    path,
                    data,
                    self._incoming_modified_at(machine, path)
                )
            except (FileSystemError, OSError) as e:
                self._written[path] = False
                self._report("filesystem", e, machine.session.id)
                return

            self._written[path] = True
            self.logger.debug("Received file", session_id=machine.session.id, path=path, written=written)

    async def handle_peer_disconnected(self, peer_id: str) -> None:
        if peer_id != self._peer_id:
            return

        async with self._lock:
            self._peer_id = None
            machine = self._machine
            self.logger.warning("Peer disconnected", peer_id=peer_id)

            if machine is None or machine.status not in (
                SessionStatus.PREPARING, SessionStatus.SYNCING, SessionStatus.PAUSED
            ):
                return

            session_id = machine.session.id
            machine.fail()

        self._report("transport", PeerDisconnectedError(f"Peer {peer_id} disconnected"), session_id)
