"""Webhook ingestion: verify, classify, transition, extract, acknowledge.

Every delivery resolves to a WebhookOutcome; nothing raised while processing
a call escapes to the HTTP layer.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from enum import Enum

from tablecall.classification import classify_outcome
from tablecall.config import Settings
from tablecall.errors import AuthError, MalformedPayload, StaleWriteError, StorageError
from tablecall.events import WebhookEnvelope, parse_envelope
from tablecall.extraction import ExtractionOrchestrator
from tablecall.models import Call
from tablecall.store import CallStore, utcnow
from tablecall.transitions import TransitionPlan, plan_transition
from tablecall.verification import WebhookVerifier

logger = logging.getLogger(__name__)


class WebhookOutcome(Enum):
    UNAUTHORIZED = ("unauthorized", 401)
    MALFORMED = ("malformed", 400)
    UNKNOWN_CALL = ("unknown_call", 200)
    IGNORED = ("ignored", 204)
    PROCESSED = ("processed", 204)
    STORAGE_FAILED = ("storage_failed", 204)

    def __init__(self, label: str, status_code: int):
        self.label = label
        self.status_code = status_code


class CallLocks:
    """One asyncio.Lock per provider call id, dropped when nobody holds it."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class WebhookService:
    def __init__(
        self,
        verifier: WebhookVerifier,
        store: CallStore,
        orchestrator: ExtractionOrchestrator,
        settings: Settings,
        locks: CallLocks | None = None,
    ):
        self.verifier = verifier
        self.store = store
        self.orchestrator = orchestrator
        self.settings = settings
        self.locks = locks or CallLocks()

    async def handle(self, raw_body: bytes, signature: str | None) -> WebhookOutcome:
        try:
            self.verifier.verify(raw_body, signature)
        except AuthError:
            return WebhookOutcome.UNAUTHORIZED

        try:
            envelope, raw_payload = parse_envelope(raw_body)
        except MalformedPayload as e:
            logger.error("Webhook rejected: %s", e)
            return WebhookOutcome.MALFORMED

        provider_call_id = envelope.provider_call_id
        logger.info("Webhook | event=%s | provider_call_id=%s", envelope.event, provider_call_id)
        if not provider_call_id:
            logger.warning("Webhook missing call.call_id, acknowledging without action")
            return WebhookOutcome.UNKNOWN_CALL

        try:
            return await self._process(provider_call_id, envelope, raw_payload)
        except StorageError as e:
            logger.error("Storage failure for provider_call_id=%s: %s", provider_call_id, e)
            return WebhookOutcome.STORAGE_FAILED
        except Exception:
            logger.exception("Unhandled error for provider_call_id=%s", provider_call_id)
            return WebhookOutcome.STORAGE_FAILED

    async def _process(self, provider_call_id: str, envelope: WebhookEnvelope, raw_payload: dict) -> WebhookOutcome:
        classification = None
        event = envelope.provider_event
        if event is not None and event.is_completion and envelope.call is not None:
            classification = classify_outcome(envelope.call, self.settings.human_duration_threshold_ms)
            logger.info(
                "Classified provider_call_id=%s: no_human_reached=%s (%s)",
                provider_call_id, classification.no_human_reached, classification.summary(),
            )

        for attempt in range(1, self.settings.max_write_attempts + 1):
            async with self.locks.hold(provider_call_id):
                call = await self.store.get_call_by_provider_id(provider_call_id)
                if call is None:
                    logger.warning("No call found for provider_call_id=%s, acknowledging", provider_call_id)
                    return WebhookOutcome.UNKNOWN_CALL

                artifact = await self.store.get_artifact(call.id)
                plan = plan_transition(
                    call, artifact, envelope, raw_payload, classification,
                    now=utcnow(), lease_seconds=self.settings.extraction_lease_seconds,
                )
                if not plan.apply:
                    logger.info("Call %s: no-op (%s)", call.id, plan.reason)
                    return WebhookOutcome.IGNORED

                try:
                    call = await self._commit(call, plan)
                except StaleWriteError:
                    logger.warning(
                        "Call %s changed underneath %s (attempt %d), re-reading",
                        call.id, envelope.event, attempt,
                    )
                    continue

            logger.info("Call %s: %s", call.id, plan.reason)
            if plan.run_extraction:
                await self._extract(provider_call_id, call, plan)
            return WebhookOutcome.PROCESSED

        logger.error(
            "Giving up on %s for provider_call_id=%s after %d attempts",
            envelope.event, provider_call_id, self.settings.max_write_attempts,
        )
        return WebhookOutcome.STORAGE_FAILED

    async def _commit(self, call: Call, plan: TransitionPlan) -> Call:
        if plan.updates:
            guard = {
                "status": call.status,
                "is_extracting": call.is_extracting,
                "extraction_claim": call.extraction_claim,
            }
            updated = await self.store.update_call(call.id, plan.updates, guard=guard)
            if updated is None:
                raise StaleWriteError(call.id)
            call = updated
        if plan.artifact_updates:
            try:
                await self.store.upsert_artifact(call.id, plan.artifact_updates)
            except StorageError as e:
                # Status is already committed; the artifact is best-effort.
                logger.error("Failed to store artifact for call %s: %s", call.id, e)
        return call

    async def _extract(self, provider_call_id: str, call: Call, plan: TransitionPlan) -> None:
        artifact = await self.store.get_artifact(call.id)
        outcome = await self.orchestrator.extract(call, artifact, force=plan.force_extraction)
        async with self.locks.hold(provider_call_id):
            await self.orchestrator.persist(call, outcome, plan.claim)
