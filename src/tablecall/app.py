import logging
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse, Response

from tablecall.config import Settings, validate_config
from tablecall.extraction import ExtractionClient, ExtractionOrchestrator
from tablecall.store import CallStore, InMemoryCallStore, SupabaseCallStore
from tablecall.verification import SIGNATURE_HEADER, WebhookVerifier
from tablecall.webhook import WebhookOutcome, WebhookService

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/api/webhooks/retell"

RESPONSE_TEXT = {
    WebhookOutcome.UNAUTHORIZED: "Unauthorized",
    WebhookOutcome.MALFORMED: "Bad Request",
}


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def build_store(settings: Settings) -> CallStore:
    if settings.uses_supabase:
        logger.info("Using Supabase call store at %s", settings.supabase_url)
        return SupabaseCallStore(settings.supabase_url, settings.supabase_secret_key)
    logger.warning("Supabase not configured, using in-memory call store")
    return InMemoryCallStore()


def create_app(
    settings: Settings | None = None,
    store: CallStore | None = None,
    verifier: WebhookVerifier | None = None,
    extraction_client: ExtractionClient | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    store = store or build_store(settings)
    extraction_client = extraction_client or ExtractionClient(
        api_key=settings.openai_api_key,
        model=settings.openai_model,
        base_url=settings.openai_base_url,
        timeout=settings.extraction_timeout,
    )
    orchestrator = ExtractionOrchestrator(store, extraction_client, settings.default_timezone)

    service = None
    if verifier is None and settings.webhook_secret:
        verifier = WebhookVerifier(settings.webhook_secret)
    if verifier is not None:
        service = WebhookService(verifier, store, orchestrator, settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await extraction_client.close()
        await store.close()

    app = FastAPI(title="TableCall webhook service", lifespan=lifespan)
    app.state.store = store
    app.state.service = service

    @app.get("/health")
    async def health():
        return PlainTextResponse("ok")

    @app.post(WEBHOOK_PATH)
    async def retell_webhook(request: Request):
        """Receive a provider lifecycle event and apply it to the matching call."""
        if service is None:
            logger.error("No webhook API key configured")
            return PlainTextResponse("Server configuration error", status_code=500)

        raw_body = await request.body()
        outcome = await service.handle(raw_body, request.headers.get(SIGNATURE_HEADER))
        if outcome in RESPONSE_TEXT:
            return PlainTextResponse(RESPONSE_TEXT[outcome], status_code=outcome.status_code)
        return Response(status_code=outcome.status_code)

    return app


def main():
    load_dotenv()
    validate_config()
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
