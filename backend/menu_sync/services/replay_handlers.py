"""Replay handlers, one per DLQ event type."""

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Dict, Optional

from pydantic import BaseModel, ConfigDict

from menu_sync.connectors.base import CatalogSource, ScopeKey
from menu_sync.constants.dlq import DlqEventType
from menu_sync.exceptions import ReplayHandlerError

if TYPE_CHECKING:
    from menu_sync.models.dlq_message import DlqMessage

log = logging.getLogger(__name__)


class ReplayContext(BaseModel):
    """Collaborators a handler may need to redo the failed work."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    delta_service: Any  # MenuDeltaService
    catalog_source: Optional[CatalogSource] = None


class ReplayHandler(ABC):
    event_type: DlqEventType

    @abstractmethod
    async def replay(self, message: "DlqMessage", context: Optional[ReplayContext]) -> None:
        """Redo the failed operation. Raises on failure."""
        pass

    @staticmethod
    def _require_context(message: "DlqMessage", context: Optional[ReplayContext]) -> ReplayContext:
        if context is None:
            raise ReplayHandlerError(f"No replay context configured for DLQ message {message.id}")
        return context

    @staticmethod
    def _delta_target(message: "DlqMessage"):
        notes = message.context
        delta_id = notes.get("delta_id")
        vendor_code = notes.get("vendor_code")
        if delta_id is None or not vendor_code:
            raise ReplayHandlerError(f"DLQ message {message.id} has no delta id or vendor code to replay")
        return delta_id, vendor_code

    @staticmethod
    async def _submit(context: ReplayContext, delta_id: int, vendor_code: str):
        result = await context.delta_service.submit_delta(delta_id, vendor_code, dead_letter=False)
        if not result.success:
            raise ReplayHandlerError(result.error_message or f"Delta {delta_id} submission failed")


class DeltaSyncReplayHandler(ReplayHandler):
    """Resubmits the stored delta to the same vendor."""
    event_type = DlqEventType.DELTA_SYNC

    async def replay(self, message, context):
        context = self._require_context(message, context)
        delta_id, vendor_code = self._delta_target(message)
        await self._submit(context, delta_id, vendor_code)


class DeltaGenerationReplayHandler(ReplayHandler):
    """Fetches the scope's current catalog and generates the delta again."""
    event_type = DlqEventType.DELTA_GENERATION

    async def replay(self, message, context):
        context = self._require_context(message, context)
        if context.catalog_source is None:
            raise ReplayHandlerError("Delta generation replay needs a catalog source")

        notes = message.context
        if "scope" not in notes:
            raise ReplayHandlerError(f"DLQ message {message.id} carries no scope")
        scope = ScopeKey.model_validate(notes["scope"])

        catalog = await context.catalog_source.fetch_current_catalog(scope)
        generation = context.delta_service.generate_delta(
            scope,
            catalog,
            force_full_sync=notes.get("force_full_sync", False),
            correlation_id=message.correlation_id,
            dead_letter=False,
        )
        if not generation.success:
            raise ReplayHandlerError(generation.error_message or "Delta generation failed")

        vendor_code = notes.get("vendor_code")
        if generation.delta is not None and vendor_code:
            await self._submit(context, generation.delta.id, vendor_code)
        else:
            log.info(f"Replayed generation for {scope}: no delta to submit")


class DeltaValidationReplayHandler(ReplayHandler):
    """Re-validates the stored delta and submits it once it passes."""
    event_type = DlqEventType.DELTA_VALIDATION

    async def replay(self, message, context):
        context = self._require_context(message, context)
        delta_id, vendor_code = self._delta_target(message)

        validation = context.delta_service.validate_delta(delta_id)
        if validation.errors:
            raise ReplayHandlerError(f"Delta {delta_id} still invalid: {'; '.join(validation.errors)}")
        await self._submit(context, delta_id, vendor_code)


REPLAY_HANDLERS: Dict[DlqEventType, ReplayHandler] = {
    handler.event_type: handler
    for handler in (DeltaSyncReplayHandler(), DeltaGenerationReplayHandler(), DeltaValidationReplayHandler())
}


def handler_for(event_type) -> ReplayHandler:
    try:
        return REPLAY_HANDLERS[DlqEventType(event_type)]
    except ValueError:
        raise ReplayHandlerError(f"No replay handler for event type '{event_type}'")
