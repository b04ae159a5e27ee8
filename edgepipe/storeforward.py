"""Store-and-forward: keep failed export data and retry it later."""

from __future__ import annotations

import dataclasses
import re
import threading
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Iterable, Optional

from .container import configuration_from, logging_client_from, store_client_from
from .context import Context

CORRELATION_HEADER = "X-Correlation-ID"

DEFAULT_MIN_RETRY_INTERVAL = 1.0

_NS_PER_UNIT = {
    "ns": 1,
    "us": 1_000,
    "\u00b5s": 1_000,
    "\u03bcs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|\u00b5s|\u03bcs|ms|s|m|h)")

_POLL_STEP = 0.05


def parse_duration(text: str) -> float:
    """Parse a duration such as '1m30s' or '500ms' into seconds.

    Raises ValueError for malformed input.
    """
    rest = text
    sign = 1
    if rest and rest[0] in "+-":
        sign = -1 if rest[0] == "-" else 1
        rest = rest[1:]
    if rest == "0":
        return 0.0
    if not rest:
        raise ValueError(f'invalid duration "{text}"')
    total_ns = Decimal(0)
    pos = 0
    while pos < len(rest):
        match = _DURATION_PART.match(rest, pos)
        if match is None:
            raise ValueError(f'invalid duration "{text}"')
        total_ns += Decimal(match.group(1)) * _NS_PER_UNIT[match.group(2)]
        pos = match.end()
    return sign * float(total_ns / Decimal(1_000_000_000))


@dataclass
class StoredObject:
    """Data stored for a later retry of the pipeline from a given position."""

    app_service_key: str = ""
    payload: bytes = b""
    pipeline_id: str = ""
    pipeline_position: int = 0
    version: str = ""
    context_data: dict[str, str] = field(default_factory=dict)
    id: str = ""
    correlation_id: str = ""
    retry_count: int = 0

    def __post_init__(self) -> None:
        if self.context_data is None:
            self.context_data = {}


def _wait_any(events: Iterable[threading.Event], timeout: float) -> bool:
    """Wait up to timeout seconds; True as soon as any event is set."""
    events = tuple(events)
    deadline = time.monotonic() + timeout
    while True:
        if any(e.is_set() for e in events):
            return True
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        events[0].wait(min(_POLL_STEP, remaining))


class StoreForward:
    """Stores failed pipeline data and retries it through the owning runtime.

    The runtime must provide ``service_key``, ``get_pipeline_by_id(id)`` and
    ``execute_pipeline(target, context, pipeline, start_position, is_retry)``,
    the latter returning None on success.
    """

    def __init__(self, runtime: Any, dic: Any) -> None:
        self.runtime = runtime
        self.dic = dic

    def start_retry_loop(
        self,
        app_stop: threading.Event,
        enabled_stop: threading.Event,
        service_key: str,
    ) -> threading.Thread:
        """Start the retry loop in a background thread and return the thread.

        The loop ends when either event is set.
        """
        config = configuration_from(self.dic.get)
        lc = logging_client_from(self.dic.get)
        thread = threading.Thread(
            target=self._retry_loop,
            args=(config, lc, app_stop, enabled_stop, service_key),
            name="store-and-forward",
            daemon=True,
        )
        thread.start()
        return thread

    def _retry_loop(
        self,
        config: Any,
        lc: Any,
        app_stop: threading.Event,
        enabled_stop: threading.Event,
        service_key: str,
    ) -> None:
        settings = config.writable.store_and_forward
        try:
            retry_interval = parse_duration(settings.retry_interval)
        except ValueError:
            lc.warning(
                "StoreAndForward RetryInterval failed to parse, defaulting to %ss",
                DEFAULT_MIN_RETRY_INTERVAL,
            )
            retry_interval = DEFAULT_MIN_RETRY_INTERVAL
        else:
            if retry_interval < DEFAULT_MIN_RETRY_INTERVAL:
                lc.warning(
                    "StoreAndForward RetryInterval value %ss is less than the allowed minimum value, "
                    "defaulting to %ss",
                    retry_interval,
                    DEFAULT_MIN_RETRY_INTERVAL,
                )
                retry_interval = DEFAULT_MIN_RETRY_INTERVAL

        if settings.max_retry_count < 0:
            lc.warning("StoreAndForward MaxRetryCount can not be less than 0, defaulting to 1")
            settings.max_retry_count = 1

        lc.info(
            "Starting StoreAndForward Retry Loop with %ss RetryInterval and %d max retries",
            retry_interval,
            settings.max_retry_count,
        )

        while not _wait_any((app_stop, enabled_stop), retry_interval):
            self.retry_stored_data(service_key)

        lc.info("Exiting StoreAndForward Retry Loop")

    def store_for_later_retry(
        self, payload: bytes, app_context: Any, pipeline: Any, position: int
    ) -> Optional[str]:
        """Store payload for a later retry from position; returns the stored ID or None."""
        item = StoredObject(
            self.runtime.service_key,
            payload,
            pipeline.id,
            position,
            pipeline.hash,
            app_context.get_all_values(),
        )
        item.correlation_id = app_context.correlation_id
        lc = app_context.logging_client()

        lc.debug(
            "Storing data for later retry for pipeline '%s' (%s=%s)",
            pipeline.id,
            CORRELATION_HEADER,
            app_context.correlation_id,
        )

        config = configuration_from(self.dic.get)
        if not config.writable.store_and_forward.enabled:
            lc.error(
                "Failed to store item for later retry for pipeline '%s': StoreAndForward not enabled",
                pipeline.id,
            )
            return None

        store_client = store_client_from(self.dic.get)
        if store_client is None:
            lc.error(
                "Failed to store item for later retry for pipeline '%s': no store client",
                pipeline.id,
            )
            return None

        try:
            return store_client.store(item)
        except Exception as exc:  # store backends raise their own error types
            lc.error("Failed to store item for later retry for pipeline '%s': %s", pipeline.id, exc)
            return None

    def retry_stored_data(self, service_key: str) -> None:
        """Retry every stored item of service_key and update the store accordingly."""
        store_client = store_client_from(self.dic.get)
        lc = logging_client_from(self.dic.get)

        try:
            items = list(store_client.retrieve_from_store(service_key) or [])
        except Exception as exc:
            lc.error("Unable to load store and forward items from DB: %s", exc)
            return

        lc.debug("%d stored data items found for retrying", len(items))
        if not items:
            return

        to_remove, to_update = self.process_retry_items(items)
        lc.debug(" %d stored data items will be removed post retry", len(to_remove))
        lc.debug(" %d stored data items will be update post retry", len(to_update))

        for item in to_remove:
            try:
                store_client.remove_from_store(item)
            except Exception as exc:
                lc.error(
                    "Unable to remove stored data item for pipeline '%s' from DB, objectID=%s: %s",
                    item.pipeline_id,
                    item.id,
                    exc,
                )

        for item in to_update:
            try:
                store_client.update(item)
            except Exception as exc:
                lc.error(
                    "Unable to update stored data item for pipeline '%s' from DB, objectID=%s: %s",
                    item.pipeline_id,
                    item.id,
                    exc,
                )

    def process_retry_items(
        self, items: Iterable[StoredObject]
    ) -> tuple[list[StoredObject], list[StoredObject]]:
        """Retry items and split them into (items to remove, items to update).

        An item is removed when its retry succeeds, its retries are used up,
        its pipeline is gone or the pipeline's version changed.
        """
        lc = logging_client_from(self.dic.get)
        config = configuration_from(self.dic.get)
        max_retries = config.writable.store_and_forward.max_retry_count

        to_remove: list[StoredObject] = []
        to_update: list[StoredObject] = []

        for original in items:
            item = dataclasses.replace(original, context_data=dict(original.context_data))
            pipeline = self.runtime.get_pipeline_by_id(item.pipeline_id)

            if pipeline is None:
                lc.error(
                    "Stored data item's pipeline '%s' no longer exists. Removing item from DB",
                    item.pipeline_id,
                )
                to_remove.append(item)
                continue

            if item.version != pipeline.hash:
                lc.error(
                    "Stored data item's pipeline Version doesn't match '%s' pipeline's Version. "
                    "Removing item from DB",
                    item.pipeline_id,
                )
                to_remove.append(item)
                continue

            if self._retry_export_function(item, pipeline):
                lc.debug(
                    "Retry successful for pipeline '%s'. Removing item from DB (%s=%s)",
                    item.pipeline_id,
                    CORRELATION_HEADER,
                    item.correlation_id,
                )
                to_remove.append(item)
                continue

            item.retry_count += 1
            if max_retries == 0 or item.retry_count < max_retries:
                lc.debug(
                    "Export retry failed for pipeline '%s'. retries=%d, Incrementing retry count (%s=%s)",
                    item.pipeline_id,
                    item.retry_count,
                    CORRELATION_HEADER,
                    item.correlation_id,
                )
                to_update.append(item)
                continue

            lc.debug(
                "Max retries exceeded for pipeline '%s'. retries=%d, Removing item from DB (%s=%s)",
                item.pipeline_id,
                item.retry_count,
                CORRELATION_HEADER,
                item.correlation_id,
            )
            to_remove.append(item)

        return to_remove, to_update

    def _retry_export_function(self, item: StoredObject, pipeline: Any) -> bool:
        app_context = Context(item.correlation_id, self.dic, "")
        for key, value in item.context_data.items():
            app_context.add_value(key.lower(), value)

        app_context.logging_client().debug(
            "Retrying stored data for pipeline '%s' (%s=%s)",
            item.pipeline_id,
            CORRELATION_HEADER,
            app_context.correlation_id,
        )

        return (
            self.runtime.execute_pipeline(
                item.payload, app_context, pipeline, item.pipeline_position, True
            )
            is None
        )