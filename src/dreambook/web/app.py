"""FastAPI web application for dream sequence generation."""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles
from pymongo.errors import PyMongoError
from rich.console import Console

from dreambook import __version__
from dreambook.character_analysis import CharacterAnalyzer
from dreambook.context import PipelineContext, get_default_context
from dreambook.db_config import create_indexes
from dreambook.error_handling import SequenceValidationError
from dreambook.image_store import LocalImageStore
from dreambook.models import GenerationRequest
from dreambook.orchestrator import SequenceOrchestrator
from dreambook.progress import encode_sse
from dreambook.providers import ProviderFactory
from dreambook.rules import GlobalRulesProvider
from dreambook.services.job_manager import JobManager
from dreambook.services.sequence_store import InMemorySequenceStore, MongoSequenceStore, SequenceStore
from dreambook.styles import InMemoryStyleResolver, MongoStyleResolver, StyleResolver
from dreambook.synthesis import ImageSynthesisClient
from dreambook.utils import coerce_scene_texts
from dreambook.web.models.web_models import (
    CharacterPreviewResponse,
    ErrorResponse,
    JobStatusResponse,
    StyleResponse,
    SuccessResponse,
)

# Initialize logger
logger = logging.getLogger(__name__)
console = Console()

# Load environment variables from .env file in the project root
project_root = Path(__file__).parent.parent.parent.parent
load_dotenv(project_root / ".env")

WEB_DIR = Path(__file__).parent
STATIC_DIR = WEB_DIR / "static"


def _default_style_resolver() -> StyleResolver:
    try:
        return MongoStyleResolver()
    except (PyMongoError, RuntimeError) as e:
        console.log(f"[yellow]Style collection unavailable, using built-in styles: {e}[/yellow]")
        return InMemoryStyleResolver()


def _default_sequence_store() -> SequenceStore:
    try:
        return MongoSequenceStore()
    except (PyMongoError, RuntimeError) as e:
        console.log(f"[yellow]Sequence collection unavailable, keeping sequences in memory: {e}[/yellow]")
        return InMemorySequenceStore()


def _default_rules(context: PipelineContext) -> GlobalRulesProvider:
    try:
        return GlobalRulesProvider.from_database(context.rules_refresh_interval)
    except (PyMongoError, RuntimeError) as e:
        console.log(f"[yellow]Rule collection unavailable, using environment/default rules: {e}[/yellow]")
        return GlobalRulesProvider(refresh_interval=context.rules_refresh_interval)


def build_orchestrator(
    context: PipelineContext,
    *,
    style_resolver: StyleResolver | None = None,
    analyzer: CharacterAnalyzer | None = None,
    synthesis: ImageSynthesisClient | None = None,
    sequence_store: SequenceStore | None = None,
    rules: GlobalRulesProvider | None = None,
) -> SequenceOrchestrator:
    """Wire an orchestrator, building any collaborator not supplied."""
    if synthesis is None:
        synthesis = ImageSynthesisClient(
            ProviderFactory.create_chain(context),
            LocalImageStore(context.storage_dir, context.public_base_url),
            timeout=context.provider_timeout,
            download_timeout=context.download_timeout,
            placeholder_url=context.error_placeholder_url,
        )
    return SequenceOrchestrator(
        context,
        style_resolver or _default_style_resolver(),
        analyzer or CharacterAnalyzer.from_context(context),
        synthesis,
        sequence_store or _default_sequence_store(),
        rules if rules is not None else _default_rules(context),
    )


def _validation_response(error: SequenceValidationError) -> JSONResponse:
    body = ErrorResponse(**error.as_dict())
    return JSONResponse(status_code=400, content=body.model_dump())


async def _read_upload(upload: UploadFile | None) -> tuple[bytes, str | None]:
    if upload is None:
        return b"", None
    data = await upload.read()
    return data, upload.content_type


def create_app(
    context: PipelineContext | None = None,
    *,
    orchestrator: SequenceOrchestrator | None = None,
    job_manager: JobManager | None = None,
) -> FastAPI:
    """Create the FastAPI application."""
    context = context or get_default_context()
    orchestrator = orchestrator or build_orchestrator(context)
    job_manager = job_manager or JobManager(context.progress_queue_size)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if isinstance(orchestrator.store, MongoSequenceStore) and create_indexes():
            console.log("Database indexes ensured")
        if isinstance(orchestrator.rules, GlobalRulesProvider):
            orchestrator.rules.start()
        yield
        if isinstance(orchestrator.rules, GlobalRulesProvider):
            await orchestrator.rules.stop()
        await job_manager.shutdown()

    app = FastAPI(
        title="Dreambook",
        description="Illustrated dream sequence generation from a reference photo",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.context = context
    app.state.orchestrator = orchestrator
    app.state.job_manager = job_manager

    # CORS middleware for development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Job-Id"],
    )

    # Mount static files (error placeholder) and stored images
    if STATIC_DIR.exists():
        app.mount("/static", StaticFiles(directory=str(STATIC_DIR)), name="static")
    if context.public_base_url.startswith("/"):
        generated_dir = Path(context.storage_dir)
        generated_dir.mkdir(parents=True, exist_ok=True)
        app.mount(context.public_base_url, StaticFiles(directory=str(generated_dir)), name="generated")

    @app.exception_handler(SequenceValidationError)
    async def _handle_validation(request: Request, exc: SequenceValidationError):
        return _validation_response(exc)

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "service": "dreambook", "version": __version__}

    @app.get("/api/styles", response_model=List[StyleResponse])
    async def list_styles():
        return [StyleResponse.from_record(style) for style in orchestrator.style_resolver.list_styles()]

    @app.post("/api/sequences")
    async def create_sequence(
        subject_label: str = Form(""),
        style_key: str = Form(""),
        dreamer: Optional[str] = Form(None),
        scenes: Optional[List[str]] = Form(None),
        character_prompt: Optional[str] = Form(None),
        reference_image: Optional[UploadFile] = File(None),
    ):
        """Validate a submission, start the job and stream its progress as SSE."""
        image, content_type = await _read_upload(reference_image)
        request = GenerationRequest(
            subject_label=subject_label,
            dreamer=dreamer,
            style_key=style_key,
            reference_image=image,
            reference_content_type=content_type,
            scenes=coerce_scene_texts(scenes),
            character_prompt=character_prompt,
        )

        # Raises SequenceValidationError -> 400 before any job exists
        prepared = orchestrator.validate(request)
        job = job_manager.start(orchestrator, prepared)

        async def event_stream():
            try:
                async for event in job.channel.events():
                    yield encode_sse(event)
            finally:
                if not job.channel.closed:
                    job_manager.detach(job.job_id)

        return StreamingResponse(
            event_stream(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache, no-transform",
                "Connection": "keep-alive",
                "X-Job-Id": job.job_id,
            },
        )

    @app.get("/api/sequences/jobs/{job_id}", response_model=JobStatusResponse)
    async def get_job_status(job_id: str):
        status = job_manager.status(job_id)
        if status is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return JobStatusResponse(**status)

    @app.delete("/api/sequences/jobs/{job_id}", response_model=SuccessResponse)
    async def cancel_job(job_id: str):
        job = job_manager.get(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="Job not found")
        if not job_manager.cancel(job_id):
            return SuccessResponse(success=False, message="Job has already finished")
        return SuccessResponse(message="Cancellation requested; completed scenes will be kept")

    @app.get("/api/sequences/{sequence_id}")
    async def get_sequence(sequence_id: str):
        try:
            result = orchestrator.store.load(sequence_id)
        except PyMongoError as e:
            logger.error("Error loading sequence %s: %s", sequence_id, e)
            raise HTTPException(status_code=500, detail="Error loading the dream sequence")
        if result is None:
            raise HTTPException(status_code=404, detail="Sequence not found")
        return result.model_dump(mode="json")

    @app.post("/api/characters", response_model=CharacterPreviewResponse, response_model_by_alias=True)
    async def create_character(
        subject_label: str = Form(""),
        style_key: str = Form(""),
        reference_image: Optional[UploadFile] = File(None),
    ):
        """Generate only the character image for preview."""
        image, content_type = await _read_upload(reference_image)
        request = GenerationRequest(
            subject_label=subject_label,
            style_key=style_key,
            reference_image=image,
            reference_content_type=content_type,
        )
        try:
            preview = await orchestrator.generate_character(request)
        except SequenceValidationError:
            raise
        except Exception as e:
            logger.error("Error generating character preview: %s", e, exc_info=True)
            raise HTTPException(status_code=500, detail="The character image could not be generated")
        return CharacterPreviewResponse.from_preview(preview)

    return app


def run_server(host: str = "127.0.0.1", port: int = 8000, reload: bool = False):
    """Run the FastAPI server."""
    uvicorn.run(
        "dreambook.web.app:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        log_level="info"
    )


if __name__ == "__main__":
    run_server()
