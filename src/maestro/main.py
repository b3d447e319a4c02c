"""FastAPI application for the Maestro conversation engine."""

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException, Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from .config import settings
from .models.schemas import (
    ConversationSettings,
    ConversationState,
    MediaAsset,
    Message,
    ReplySuggestion,
    SpeechPart,
    UserProfile,
)
from .services.languages import LANGUAGES, list_pairs
from .services.llm_client import ApiFailure
from .services.media import CameraSnapshot
from .services.orchestrator import OrchestratorError
from .services.session import ConversationSession
from .services.storage import Storage, StorageError

# Configure logging
_log_fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
logging.basicConfig(level=logging.INFO, format=_log_fmt)

# Optionally mirror all logs to a file (set LOG_FILE env var from the desktop).
_log_file = os.getenv("LOG_FILE", "").strip()
if _log_file:
    try:
        Path(_log_file).parent.mkdir(parents=True, exist_ok=True)
        _fh = logging.FileHandler(_log_file, encoding="utf-8")
        _fh.setFormatter(logging.Formatter(_log_fmt))
        _fh.setLevel(logging.DEBUG)
        logging.getLogger().addHandler(_fh)
    except OSError as _log_err:
        print(f"[maestro] WARNING: could not open log file {_log_file!r}: {_log_err}", flush=True)

logger = logging.getLogger(__name__)

data_root = Path(settings.data_dir).resolve()

# Active sessions by pair id
session_controllers: Dict[str, ConversationSession] = {}


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    for session in list(session_controllers.values()):
        session.close()
    session_controllers.clear()


# Create FastAPI app
app = FastAPI(
    title="Maestro",
    description="Conversational language tutor engine",
    version="1.0.0",
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _build_storage() -> Storage:
    return Storage(base_dir=str(data_root))


def _build_session(pair_id: str) -> ConversationSession:
    camera = CameraSnapshot(settings.camera_index) if settings.camera_index is not None else None
    return ConversationSession(pair_id, storage=_build_storage(), camera=camera)


def _get_session(pair_id: str) -> ConversationSession:
    """Return the running session for a pair, creating it on first use."""
    session = session_controllers.get(pair_id)
    if session is None:
        try:
            session = _build_session(pair_id)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except ApiFailure as e:
            raise HTTPException(status_code=503, detail=e.message)
        session.start()
        session_controllers[pair_id] = session
        logger.info(f"Session started for pair: {pair_id}")
    return session


# Request/Response Models


class SendRequest(BaseModel):
    """Request to run one conversation turn."""

    text: str = ""
    attachment: Optional[MediaAsset] = None


class SendResponse(BaseModel):
    """Outcome of a turn and the message it produced."""

    success: bool
    message: Optional[Message] = None
    error: Optional[str] = None


class BookmarkRequest(BaseModel):
    message_id: Optional[str] = None


class SuggestionRequest(BaseModel):
    text: str


class SuggestionResponse(BaseModel):
    success: bool
    suggestion: Optional[ReplySuggestion] = None


class ActivityRequest(BaseModel):
    toggle_hold: bool = False


class ActivityResponse(BaseModel):
    user_hold: bool


class SpeechStateRequest(BaseModel):
    """State reported by the speech subsystem."""

    speaking: Optional[bool] = None
    listening: Optional[bool] = None
    transcript: Optional[str] = None


class SpeechQueueResponse(BaseModel):
    parts: List[SpeechPart]


class SpeechCacheRequest(BaseModel):
    """Synthesized audio to cache on a message or one of its suggestions."""

    text: str
    lang: str
    provider: str
    audio: str
    voice: Optional[str] = None
    mime_type: str = "audio/wav"
    suggestion_index: Optional[int] = None


class LanguagesResponse(BaseModel):
    languages: Dict[str, str]
    pairs: List[str]


# API Endpoints


@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "api_key_configured": settings.has_api_key}


@app.get("/api/languages", response_model=LanguagesResponse)
async def get_languages():
    return LanguagesResponse(languages=LANGUAGES, pairs=list_pairs())


@app.get("/api/settings", response_model=ConversationSettings)
async def get_settings():
    return _build_storage().load_settings()


@app.put("/api/settings", response_model=ConversationSettings)
async def update_settings(request: ConversationSettings):
    """Persist conversation settings and apply them to every active session."""
    try:
        _build_storage().save_settings(request)
    except StorageError as e:
        logger.error(f"Failed to save settings: {e}")
        raise HTTPException(status_code=500, detail=str(e))
    for session in session_controllers.values():
        session.update_preferences(request)
    return request


@app.get("/api/profile", response_model=UserProfile)
async def get_profile():
    return _build_storage().load_profile()


@app.get("/api/pairs/{pair_id}/messages", response_model=ConversationState)
async def get_messages(pair_id: str):
    session = _get_session(pair_id)
    return ConversationState(
        pair_id=session.pair_id,
        messages=session.messages(),
        bookmark_message_id=session.chat_store.bookmark_message_id,
        max_visible_messages=session.chat_store.max_visible_messages,
    )


@app.delete("/api/pairs/{pair_id}/messages", status_code=204)
async def reset_messages(pair_id: str):
    """Delete the full history of a pair."""
    session = _get_session(pair_id)
    try:
        session.reset()
    except OrchestratorError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except StorageError as e:
        logger.error(f"Failed to reset history for {pair_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))
    return Response(status_code=204)


@app.post("/api/pairs/{pair_id}/send", response_model=SendResponse)
async def send_message(pair_id: str, request: SendRequest):
    """
    Run one turn.

    Returns once the assistant reply (or the turn's error message) is
    persisted; enrichment continues in the background.
    """
    session = _get_session(pair_id)
    if not session.orchestrator.can_start():
        raise HTTPException(status_code=409, detail="A turn or speech playback is in progress")
    try:
        success = await session.send(request.text, request.attachment)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    messages = session.messages()
    latest = messages[-1] if messages else None
    return SendResponse(
        success=success,
        message=latest,
        error=None if success else session.orchestrator.last_error,
    )


@app.post("/api/pairs/{pair_id}/bookmark", response_model=ConversationState)
async def set_bookmark(pair_id: str, request: BookmarkRequest):
    session = _get_session(pair_id)
    try:
        session.set_bookmark(request.message_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return ConversationState(
        pair_id=session.pair_id,
        messages=session.messages(),
        bookmark_message_id=session.chat_store.bookmark_message_id,
        max_visible_messages=session.chat_store.max_visible_messages,
    )


@app.delete("/api/pairs/{pair_id}/messages/{message_id}", status_code=204)
async def delete_message(pair_id: str, message_id: str):
    session = _get_session(pair_id)
    try:
        deleted = session.delete_message(message_id)
    except OrchestratorError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if not deleted:
        raise HTTPException(status_code=404, detail="Message not found")
    return Response(status_code=204)


@app.post("/api/pairs/{pair_id}/suggestions", response_model=SuggestionResponse)
async def create_suggestion(pair_id: str, request: SuggestionRequest):
    """Turn a learner utterance into a reply suggestion."""
    session = _get_session(pair_id)
    suggestion = await session.create_suggestion(request.text)
    return SuggestionResponse(success=suggestion is not None, suggestion=suggestion)


@app.post("/api/pairs/{pair_id}/activity", response_model=ActivityResponse)
async def report_activity(pair_id: str, request: ActivityRequest):
    session = _get_session(pair_id)
    return ActivityResponse(user_hold=session.note_user_activity(request.toggle_hold))


@app.post("/api/pairs/{pair_id}/snapshot", status_code=204)
async def push_snapshot(pair_id: str, request: MediaAsset):
    """Provide the latest camera frame captured by the UI."""
    session = _get_session(pair_id)
    if request.kind != "image":
        raise HTTPException(status_code=400, detail="Snapshots must be images")
    session.push_snapshot(request)
    return Response(status_code=204)


@app.post("/api/pairs/{pair_id}/speech/state")
async def report_speech_state(pair_id: str, request: SpeechStateRequest):
    session = _get_session(pair_id)
    session.report_speech_state(
        speaking=request.speaking,
        listening=request.listening,
        transcript=request.transcript,
    )
    return session.status()["speech"]


@app.get("/api/pairs/{pair_id}/speech/queue", response_model=SpeechQueueResponse)
async def drain_speech_queue(pair_id: str):
    session = _get_session(pair_id)
    return SpeechQueueResponse(parts=session.drain_speech_queue())


@app.post("/api/pairs/{pair_id}/messages/{message_id}/speech-cache")
async def cache_speech(pair_id: str, message_id: str, request: SpeechCacheRequest):
    session = _get_session(pair_id)
    if session.chat_store.get(message_id) is None:
        raise HTTPException(status_code=404, detail="Message not found")
    stored = session.speech.cache_audio(
        message_id,
        request.text,
        request.lang,
        request.provider,
        request.audio,
        voice=request.voice,
        mime_type=request.mime_type,
        suggestion_index=request.suggestion_index,
    )
    return {"stored": stored}


@app.get("/api/pairs/{pair_id}/status")
async def get_status(pair_id: str):
    """Turn phase, prep progress, busy tags and re-engagement phase."""
    return _get_session(pair_id).status()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port)
