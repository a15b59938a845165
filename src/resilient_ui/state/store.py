"""Versioned, persisted and cross-context synchronized state document.

The in-memory document is the source of truth. Every committed write
bumps ``version`` and ``timestamp``, is persisted to the session record
and the durable record (with bounded retries), and is broadcast to other
execution contexts. Reads never touch storage.

Loading prefers the session record over the durable one. A record that
cannot be read as a document triggers a full fallback to the default
document after backing the raw record up; individual keys that fail
their validator are stripped instead.
"""

from __future__ import annotations

import asyncio
import copy
import json
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from resilient_ui.config import StateSettings
from resilient_ui.events.models import (
    EventKind,
    StateChanged,
    StateCleared,
    StateConflict,
    StatePersistFailed,
    StateRecovered,
    StateValueRemoved,
    StateValueSet,
)
from resilient_ui.exceptions import StateCorruptionError, StorageError
from resilient_ui.reporting.classifier import ErrorClassifier
from resilient_ui.scheduler import AsyncioScheduler, PeriodicTask
from resilient_ui.state.models import (
    REQUIRED_KEYS,
    RESERVED_KEYS,
    SCHEMA_VERSION_KEY,
    TIMESTAMP_KEY,
    VERSION_KEY,
    ConflictRecord,
    ConflictResolution,
    ConflictStrategy,
    StateHealth,
    StateUpdateMessage,
    Validator,
    application_keys,
    deep_merge,
    default_document,
    default_validators,
)
from resilient_ui.state.storage import ObservableStorage, StorageChange

if TYPE_CHECKING:
    from resilient_ui.events.bus import EventBus
    from resilient_ui.scheduler import Scheduler
    from resilient_ui.state.channel import BroadcastChannel, ChannelHub
    from resilient_ui.state.storage import StorageBackend

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_CIRCULAR_MARKER = "[object Object]"
_MISSING = object()


def _split_path(path: str) -> list[str]:
    if not isinstance(path, str) or not path:
        msg = "path must be a non-empty string"
        raise ValueError(msg)
    parts = path.split(".")
    if any(not part for part in parts):
        msg = f"Invalid state path: {path!r}"
        raise ValueError(msg)
    return parts


def _encode(document: Mapping[str, Any]) -> str:
    return json.dumps(document, ensure_ascii=False)


class StateStore:
    """Owner of the state document for one execution context."""

    def __init__(
        self,
        bus: EventBus,
        durable: StorageBackend,
        session: StorageBackend | None = None,
        *,
        settings: StateSettings | None = None,
        scheduler: Scheduler | None = None,
        channel_hub: ChannelHub | None = None,
        classifier: ErrorClassifier | None = None,
        validators: Mapping[str, Validator] | None = None,
    ) -> None:
        self._bus = bus
        self._durable = durable
        self._session = session
        self._settings = settings or StateSettings()
        self._scheduler = scheduler or AsyncioScheduler()
        self._hub = channel_hub
        self._classifier = classifier or ErrorClassifier()
        self._validators: dict[str, Validator] = default_validators()
        self._validators.update(validators or {})
        self._strategy = ConflictStrategy(self._settings.conflict_strategy)
        self._sync_enabled = self._settings.sync_enabled
        self._document = default_document(self._schema_version, self._now_ms())
        self._lock = asyncio.Lock()
        self._channel: BroadcastChannel | None = None
        self._unsubscribe_channel: Callable[[], None] | None = None
        self._unsubscribe_storage: Callable[[], None] | None = None
        self._corruption_detected = False
        self._validation = PeriodicTask(
            self._scheduler,
            self._settings.validation_interval_seconds,
            self.validate,
            name="state_validation",
        )
        self.initialized = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self) -> None:
        await self.load()
        self._connect_sync()
        self._validation.start()
        self.initialized = True
        logger.info(
            "state_store_initialized",
            version=self._document[VERSION_KEY],
            sync_enabled=self._sync_enabled,
        )

    def destroy(self) -> None:
        self._validation.stop()
        self._disconnect_sync()
        self.initialized = False

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, path: str, default: Any = None) -> Any:
        """Value at a dotted ``path``, or ``default`` when absent."""
        node: Any = self._document
        for part in _split_path(path):
            if not isinstance(node, Mapping) or part not in node:
                return default
            node = node[part]
        return copy.deepcopy(node)

    def has(self, path: str) -> bool:
        return self.get(path, _MISSING) is not _MISSING

    def get_all(self) -> dict[str, Any]:
        return copy.deepcopy(self._document)

    @property
    def version(self) -> int:
        return int(self._document[VERSION_KEY])

    @property
    def timestamp(self) -> int:
        return int(self._document[TIMESTAMP_KEY])

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def set(self, path: str, value: Any) -> bool:
        """Write ``value`` at ``path`` and commit.

        Intermediate containers are created as needed. A value that fails
        the validator of its top-level key is not committed.

        Returns:
            True if the write was committed, False if it was rejected.

        Raises:
            ValueError: On an invalid or reserved path, or a value that is
                not JSON-serializable.
        """
        parts = _split_path(path)
        if parts[0] in RESERVED_KEYS:
            msg = f"{parts[0]!r} is a reserved state key"
            raise ValueError(msg)
        try:
            json.dumps(value)
        except (TypeError, ValueError) as exc:
            msg = f"Value for {path!r} is not JSON-serializable"
            raise ValueError(msg) from exc

        async with self._lock:
            self._resolve_persisted_conflict()
            candidate = copy.deepcopy(self._document)
            node = candidate
            for part in parts[:-1]:
                if not isinstance(node.get(part), dict):
                    node[part] = {}
                node = node[part]
            node[parts[-1]] = copy.deepcopy(value)

            top = parts[0]
            validator = self._validators.get(top)
            if validator is not None and not validator(candidate[top]):
                logger.warning("state_value_rejected", path=path, key=top)
                return False
            await self._commit(candidate)

        self._bus.emit(EventKind.STATE_SET, StateValueSet(path=path, value=value))
        return True

    async def remove(self, path: str) -> bool:
        """Delete the value at ``path``; returns False when it did not exist."""
        parts = _split_path(path)
        if parts[0] in RESERVED_KEYS:
            msg = f"{parts[0]!r} is a reserved state key"
            raise ValueError(msg)

        async with self._lock:
            self._resolve_persisted_conflict()
            candidate = copy.deepcopy(self._document)
            node: Any = candidate
            for part in parts[:-1]:
                node = node.get(part) if isinstance(node, dict) else None
            if not isinstance(node, dict) or parts[-1] not in node:
                return False
            del node[parts[-1]]
            self._fill_required(candidate)
            await self._commit(candidate)

        self._bus.emit(EventKind.STATE_REMOVED, StateValueRemoved(path=path))
        return True

    async def clear(self) -> None:
        """Reset to the default document and delete both records."""
        async with self._lock:
            document = default_document(self._schema_version, self._next_timestamp())
            document[VERSION_KEY] = self.version + 1
            self._document = document
            for backend, key in self._records():
                try:
                    backend.remove_item(key)
                except StorageError as exc:
                    logger.error("state_clear_failed", record=key, error=str(exc))
        logger.info("state_cleared")
        self._bus.emit(EventKind.STATE_CLEARED, StateCleared())

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    @property
    def conflict_strategy(self) -> ConflictStrategy:
        return self._strategy

    @conflict_strategy.setter
    def conflict_strategy(self, strategy: ConflictStrategy | str) -> None:
        self._strategy = ConflictStrategy(strategy)
        logger.info("conflict_strategy_set", strategy=self._strategy.value)

    @property
    def sync_enabled(self) -> bool:
        return self._sync_enabled

    def set_sync_enabled(self, enabled: bool) -> None:
        """Toggle cross-context synchronization."""
        if enabled == self._sync_enabled:
            return
        self._sync_enabled = enabled
        if enabled:
            self._connect_sync()
        else:
            self._disconnect_sync()
        logger.info("state_sync_toggled", enabled=enabled)

    def register_validator(self, key: str, validator: Validator) -> None:
        self._validators[key] = validator

    # ------------------------------------------------------------------
    # Integrity
    # ------------------------------------------------------------------

    async def load(self) -> None:
        """Load the persisted document, recovering from corruption."""
        corrupt: tuple[str, str, StateCorruptionError] | None = None
        for backend, key in self._records():
            raw = self._read(backend, key)
            if raw is None:
                continue
            try:
                document = self.parse_record(raw)
            except StateCorruptionError as exc:
                logger.warning("state_record_corrupt", record=key, error=str(exc))
                if corrupt is None:
                    corrupt = (key, raw, exc)
                continue

            stripped = self._sanitize(document)
            self._document = document
            logger.info(
                "state_loaded",
                record=key,
                version=document[VERSION_KEY],
                stripped_keys=stripped,
            )
            if stripped:
                self._corruption_detected = True
                reason = f"Corrupt state keys stripped: {', '.join(stripped)}"
                await self._persist(self._document)
                self._bus.emit(
                    EventKind.STATE_RECOVERED,
                    StateRecovered(
                        reason=reason,
                        fallback_used=False,
                        stripped_keys=stripped,
                        classification=self._classifier.classify(reason),
                    ),
                )
            return

        if corrupt is None:
            logger.info("state_defaults_used")
            return
        record, raw, exc = corrupt
        await self._fallback(str(exc), raw, source=record)

    async def validate(self) -> bool:
        """Periodic integrity check; falls back to defaults on corruption.

        Returns:
            True when the document passed (possibly after pruning).
        """
        try:
            encoded = _encode(self._document)
        except (TypeError, ValueError) as exc:
            await self.recover_with_fallback(f"State document corrupt: {exc}")
            return False
        if _CIRCULAR_MARKER in encoded:
            await self.recover_with_fallback(
                "State document corrupt: circular reference detected"
            )
            return False

        self._fill_required(self._document)
        if len(encoded.encode("utf-8")) > self._settings.max_state_bytes:
            logger.warning("state_over_capacity", size_bytes=len(encoded))
            async with self._lock:
                self._prune(self._document)
                await self._persist(self._document)
        return True

    async def recover_with_fallback(self, reason: str = "corruption_detected") -> None:
        """Back up the current document and install the default one."""
        try:
            raw = _encode(self._document)
        except (TypeError, ValueError):
            raw = repr(self._document)
        await self._fallback(reason, raw, source="memory")

    def health(self) -> StateHealth:
        try:
            size = len(_encode(self._document).encode("utf-8"))
        except (TypeError, ValueError):
            size = 0
        return StateHealth(
            size_bytes=size,
            max_bytes=self._settings.max_state_bytes,
            version=self.version,
            timestamp=self.timestamp,
            corrupted=self._corruption_detected,
            sync_enabled=self._sync_enabled,
            conflict_strategy=self._strategy,
            validators=len(self._validators),
        )

    # ------------------------------------------------------------------
    # Internals: time and records
    # ------------------------------------------------------------------

    @property
    def _schema_version(self) -> int:
        return self._settings.supported_schema_version

    def _now_ms(self) -> int:
        return int(self._scheduler.wall_time() * 1000)

    def _next_timestamp(self) -> int:
        return max(self._now_ms(), self.timestamp + 1)

    def _records(self) -> list[tuple[StorageBackend, str]]:
        records: list[tuple[StorageBackend, str]] = []
        if self._session is not None:
            records.append((self._session, self._settings.session_key))
        records.append((self._durable, self._settings.storage_key))
        return records

    @staticmethod
    def _read(backend: StorageBackend, key: str) -> str | None:
        try:
            return backend.get_item(key)
        except StorageError as exc:
            logger.error("state_read_failed", record=key, error=str(exc))
            return None

    def parse_record(self, raw: str) -> dict[str, Any]:
        """Decode a persisted record into a document.

        Raises:
            StateCorruptionError: If the record cannot be used at all.
        """
        if _CIRCULAR_MARKER in raw:
            msg = "State document corrupt: circular reference marker found"
            raise StateCorruptionError(msg)
        size = len(raw.encode("utf-8"))
        if size > self._settings.max_state_bytes:
            msg = f"State document corrupt: {size} bytes exceeds the size cap"
            raise StateCorruptionError(msg)
        try:
            document = json.loads(raw)
        except ValueError as exc:
            msg = f"State document corrupt: invalid JSON ({exc})"
            raise StateCorruptionError(msg) from exc
        if not isinstance(document, dict):
            msg = "State document corrupt: not a JSON object"
            raise StateCorruptionError(msg)

        schema = document.get(SCHEMA_VERSION_KEY, 1)
        if not isinstance(schema, int) or isinstance(schema, bool):
            msg = f"State document corrupt: bad schema marker {schema!r}"
            raise StateCorruptionError(msg)
        if schema > self._schema_version:
            msg = (
                f"Unsupported state version {schema} "
                f"(supported: {self._schema_version})"
            )
            raise StateCorruptionError(msg)
        for key in (VERSION_KEY, TIMESTAMP_KEY):
            value = document.get(key, 0)
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                msg = f"State document corrupt: bad {key} {value!r}"
                raise StateCorruptionError(msg)
            document[key] = value
        document[SCHEMA_VERSION_KEY] = schema
        return document

    def failing_keys(self, document: Mapping[str, Any]) -> list[str]:
        """Top-level keys whose value does not pass their validator."""
        return [
            key
            for key, validator in self._validators.items()
            if key in document and not validator(document[key])
        ]

    def _sanitize(self, document: dict[str, Any]) -> list[str]:
        """Strip keys failing their validator and refill required keys."""
        stripped = self.failing_keys(document)
        for key in stripped:
            del document[key]
        self._fill_required(document)
        return stripped

    def _fill_required(self, document: dict[str, Any]) -> None:
        defaults = default_document(self._schema_version)
        for key in REQUIRED_KEYS:
            if not document.get(key):
                document[key] = copy.deepcopy(defaults[key])

    def _prune(self, document: dict[str, Any]) -> None:
        form = document.get("form")
        keep_form = self._settings.retained_form_entries
        if isinstance(form, dict) and len(form) > keep_form:
            for key in list(form)[: len(form) - keep_form]:
                del form[key]
        ui = document.get("ui")
        keep_history = self._settings.retained_history_entries
        if isinstance(ui, dict) and isinstance(ui.get("history"), list):
            ui["history"] = ui["history"][-keep_history:] if keep_history else []
        document.pop("temp", None)
        logger.info("state_pruned")

    # ------------------------------------------------------------------
    # Internals: commit and persistence
    # ------------------------------------------------------------------

    async def _commit(self, candidate: dict[str, Any]) -> None:
        candidate[VERSION_KEY] = self.version + 1
        candidate[TIMESTAMP_KEY] = self._next_timestamp()
        candidate[SCHEMA_VERSION_KEY] = self._schema_version
        encoded = _encode(candidate)
        if len(encoded.encode("utf-8")) > self._settings.max_state_bytes:
            self._prune(candidate)
        self._document = candidate
        await self._persist(candidate)
        self._broadcast(candidate)

    async def _persist(self, document: dict[str, Any]) -> bool:
        encoded = _encode(document)
        ok = True
        for backend, key in self._records():
            if not await self._persist_record(backend, key, encoded):
                ok = False
        return ok

    async def _persist_record(
        self, backend: StorageBackend, key: str, encoded: str
    ) -> bool:
        attempts = self._settings.persist_attempts
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(attempts),
                wait=wait_fixed(self._settings.persist_retry_delay_seconds),
                retry=retry_if_exception_type(StorageError),
                sleep=self._scheduler.sleep,
                reraise=True,
            ):
                with attempt:
                    backend.set_item(key, encoded)
        except StorageError as exc:
            logger.error(
                "state_persist_failed", record=key, attempts=attempts, error=str(exc)
            )
            self._bus.emit(
                EventKind.STATE_PERSIST_FAILED,
                StatePersistFailed(record=key, attempts=attempts, message=str(exc)),
            )
            return False
        return True

    async def _fallback(self, reason: str, raw: str, source: str) -> None:
        self._corruption_detected = True
        backup_key: str | None = f"{self._settings.storage_key}_backup_{self._now_ms()}"
        try:
            self._durable.set_item(backup_key, raw)
        except (StorageError, ValueError) as exc:
            logger.warning("state_backup_failed", error=str(exc))
            backup_key = None

        document = default_document(self._schema_version, self._next_timestamp())
        document[VERSION_KEY] = self.version + 1
        self._document = document
        await self._persist(document)
        logger.warning(
            "state_recovered_with_fallback",
            reason=reason,
            source=source,
            backup_key=backup_key,
        )
        self._bus.emit(
            EventKind.STATE_RECOVERED,
            StateRecovered(
                reason=reason,
                fallback_used=True,
                backup_key=backup_key,
                classification=self._classifier.classify(reason),
            ),
        )

    # ------------------------------------------------------------------
    # Internals: conflicts
    # ------------------------------------------------------------------

    def _resolve_persisted_conflict(self) -> None:
        """Reconcile with a durable record written by another context."""
        raw = self._read(self._durable, self._settings.storage_key)
        if raw is None:
            return
        try:
            stored = self.parse_record(raw)
        except StateCorruptionError as exc:
            logger.warning("conflict_check_skipped", error=str(exc))
            return
        self._sanitize(stored)

        local_version, local_timestamp = self.version, self.timestamp
        stored_version, stored_timestamp = stored[VERSION_KEY], stored[TIMESTAMP_KEY]
        if stored_timestamp > local_timestamp:
            conflict_type = "timestamp"
        elif stored_version > local_version:
            conflict_type = "version"
        else:
            return

        record = ConflictRecord(
            type=conflict_type,
            source="durable",
            stored_version=stored_version,
            stored_timestamp=stored_timestamp,
            current_version=local_version,
            current_timestamp=local_timestamp,
            stored_state=application_keys(stored),
            current_state=application_keys(self._document),
        )
        logger.info(
            "state_conflict_detected",
            type=conflict_type,
            strategy=self._strategy.value,
            stored_version=stored_version,
            current_version=local_version,
        )

        if self._strategy is ConflictStrategy.TIMESTAMP:
            resolution = ConflictResolution.USE_STORED
        elif self._strategy is ConflictStrategy.MERGE:
            resolution = ConflictResolution.MERGE
        else:
            resolution = self._ask_resolver(record)

        if resolution is ConflictResolution.USE_STORED:
            merged = {**self._document, **record.stored_state}
        elif resolution is ConflictResolution.MERGE:
            merged = deep_merge(record.stored_state, application_keys(self._document))
        else:
            merged = copy.deepcopy(self._document)

        merged[VERSION_KEY] = max(local_version, stored_version)
        merged[TIMESTAMP_KEY] = max(local_timestamp, stored_timestamp)
        merged[SCHEMA_VERSION_KEY] = self._schema_version
        self._document = merged

    def _ask_resolver(self, record: ConflictRecord) -> ConflictResolution:
        decision: list[ConflictResolution] = []

        def _resolve(resolution: ConflictResolution) -> None:
            decision.append(ConflictResolution(resolution))

        self._bus.emit(
            EventKind.STATE_CONFLICT, StateConflict(conflict=record, resolve=_resolve)
        )
        if not decision:
            logger.warning("state_conflict_unresolved", default="use_current")
            return ConflictResolution.USE_CURRENT
        return decision[-1]

    # ------------------------------------------------------------------
    # Internals: cross-context sync
    # ------------------------------------------------------------------

    def _connect_sync(self) -> None:
        if not self._sync_enabled:
            return
        if self._hub is not None and self._channel is None:
            self._channel = self._hub.open(self._settings.channel_name)
            self._unsubscribe_channel = self._channel.subscribe(self._on_message)
        elif self._hub is None and self._unsubscribe_storage is None:
            if isinstance(self._durable, ObservableStorage):
                self._unsubscribe_storage = self._durable.subscribe(
                    self._on_storage_change
                )

    def _disconnect_sync(self) -> None:
        if self._channel is not None:
            self._channel.close()
            self._channel = None
            self._unsubscribe_channel = None
        if self._unsubscribe_storage is not None:
            self._unsubscribe_storage()
            self._unsubscribe_storage = None

    def _broadcast(self, document: dict[str, Any]) -> None:
        if self._channel is None or not self._sync_enabled:
            return
        message = StateUpdateMessage(state=document, timestamp=self._now_ms())
        try:
            self._channel.post(message.model_dump())
        except (RuntimeError, TypeError) as exc:
            logger.error("state_broadcast_failed", error=str(exc))

    def _on_message(self, message: Any) -> None:
        if not isinstance(message, dict) or message.get("type") != "state-update":
            return
        try:
            update = StateUpdateMessage.model_validate(message)
        except ValueError as exc:
            logger.warning("state_broadcast_invalid", error=str(exc))
            return
        self._adopt(update.state, source="broadcast")

    def _on_storage_change(self, change: StorageChange) -> None:
        if change.key != self._settings.storage_key or change.new_value is None:
            return
        try:
            incoming = self.parse_record(change.new_value)
        except StateCorruptionError as exc:
            logger.warning("state_storage_change_invalid", error=str(exc))
            return
        self._adopt(incoming, source="storage")

    def _adopt(self, incoming: dict[str, Any], source: str) -> None:
        """Merge a newer document observed in another context."""
        if not self._sync_enabled:
            return
        version = incoming.get(VERSION_KEY, 0)
        timestamp = incoming.get(TIMESTAMP_KEY, 0)
        if not isinstance(version, int) or not isinstance(timestamp, int):
            logger.warning("state_sync_invalid_markers", source=source)
            return
        if (timestamp, version) <= (self.timestamp, self.version):
            logger.debug("state_sync_stale_ignored", source=source, version=version)
            return

        incoming = copy.deepcopy(incoming)
        self._sanitize(incoming)
        merged = {**self._document, **incoming}
        merged[SCHEMA_VERSION_KEY] = self._schema_version
        self._document = merged
        logger.info("state_synced", source=source, version=version)
        self._bus.emit(
            EventKind.STATE_CHANGED,
            StateChanged(source=source, version=version, timestamp=timestamp),
        )
