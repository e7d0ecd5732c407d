"""
FastAPI Server Entry Point

HTTP/WebSocket surface for the VoicePilot assistant. A frontend:
  - uploads a recording (POST /audio) or types a command (POST /command)
  - uploads the captured/picked image once the camera or gallery trigger fires
    (POST /image) and may stop the streamed answer (POST /generation/stop)
  - speaks every `speak` event it receives over WS /ws and reports back
    (POST /speech/done)
  - lowers a trigger once it has acted on it (POST /triggers/{name}/ack)

Every state change is pushed to all WebSocket clients as a snapshot.
"""

import asyncio
import os
import tempfile
import threading
from contextlib import asynccontextmanager
from typing import Callable, Optional

import uvicorn
from fastapi import APIRouter, FastAPI, File, Form, HTTPException, Request, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from voicepilot.app.dispatch_engine import DispatchEngine
from voicepilot.app.generative_model import FunctionCallingModel, SessionFactory
from voicepilot.app.speech_to_text_engine import SpeechToTextEngine
from voicepilot.app.tool_registry import build_default_registry
from voicepilot.config import AssistantConfig, load_config
from voicepilot.models.responses import DispatchResult, ImageInput
from voicepilot.services.information_service import WeatherTimeService
from voicepilot.services.speech_output import BroadcastSpeechSynthesizer, ConnectionManager
from voicepilot.state_manager import AppState, AssistantSnapshot, StateManager
from voicepilot.utils.exceptions import EngineBusyError
from voicepilot.utils import logger

logger = logger.get_logger("Server")


# Lazy import: the recorder needs PortAudio for sounddevice
def _get_recorder_class():
    try:
        from voicepilot.input.recorder import Recorder
        return Recorder, None
    except (ImportError, OSError) as e:
        return None, str(e)


# ============================================================================
# Pydantic Models for API
# ============================================================================

class CommandRequest(BaseModel):
    """Typed utterance, handled exactly like a transcribed one"""
    text: str


class DispatchResponse(BaseModel):
    """How a dispatch round ended, plus the resulting state"""
    outcome: str
    function_name: Optional[str] = None
    message: Optional[str] = None
    state: dict


# ============================================================================
# VoicePilot Server
# ============================================================================

class VoicePilotServer:
    """
    Wires the engines together and relays state to WebSocket clients.

    Flow:
      IDLE -> (upload or push-to-talk) -> TRANSCRIBING -> DISPATCHING ->
      RESPONDING | STREAMING -> IDLE
    """

    def __init__(
        self,
        config: AssistantConfig,
        state_manager: StateManager,
        speech_engine: SpeechToTextEngine,
        dispatcher: DispatchEngine,
        connection_manager: ConnectionManager,
        synthesizer: BroadcastSpeechSynthesizer,
    ):
        self.config = config
        self.state_manager = state_manager
        self.speech_engine = speech_engine
        self.dispatcher = dispatcher
        self.connection_manager = connection_manager
        self.synthesizer = synthesizer

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._recorder = None
        self._recorder_lock = threading.Lock()

        os.makedirs(self.config.recordings_dir, exist_ok=True)

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def start(self):
        self._loop = asyncio.get_running_loop()
        self.synthesizer.attach(self._loop)
        self._unsubscribe = self.state_manager.subscribe(self._broadcast_state_change)

        ready = await asyncio.to_thread(
            self.speech_engine.initialize,
            self.config.whisper_model,
            self.config.vocab_path,
            self.config.multilingual,
        )
        if not ready:
            logger.error("Speech engine failed to initialize; voice input is unavailable")

    async def shutdown(self):
        self.dispatcher.stop_generating()
        with self._recorder_lock:
            if self._recorder is not None and self._recorder.is_recording:
                path = self._recorder.stop()
                if path:
                    self._discard(path)
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

    def _broadcast_state_change(self, new: AssistantSnapshot, old: AssistantSnapshot):
        """Relay every state change to WebSocket clients (may run on a worker thread)"""
        message = {
            'type': 'state_change',
            'old_state': old.state.value,
            'snapshot': new.to_dict(),
        }
        self.connection_manager.broadcast_threadsafe(message, self._loop)

    # ========================================================================
    # Voice Input
    # ========================================================================

    def _save_upload(self, data: bytes, suffix: str = ".wav") -> str:
        with tempfile.NamedTemporaryFile(
            prefix="upload-", suffix=suffix, dir=self.config.recordings_dir, delete=False
        ) as f:
            f.write(data)
            return f.name

    @staticmethod
    def _discard(path: str):
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove {path}: {e}")

    async def _transcribe_file(self, path: str) -> DispatchResult:
        """Run a voice round on `path`; the file is removed once the round ends"""
        try:
            return await self.dispatcher.transcribe_and_dispatch(path, self.speech_engine)
        finally:
            self._discard(path)

    def ensure_not_recording(self):
        if self.state_manager.current_state == AppState.RECORDING:
            raise EngineBusyError("Recording in progress")

    async def handle_audio(self, data: bytes) -> DispatchResult:
        self.ensure_not_recording()
        path = self._save_upload(data)
        logger.info(f"Received {len(data)} bytes of audio -> {path}")
        return await self._transcribe_file(path)

    def start_recording(self):
        """Open the microphone (push-to-talk pressed)"""
        Recorder, import_err = _get_recorder_class()
        if import_err:
            raise HTTPException(status_code=503, detail=f"Audio capture unavailable: {import_err}")
        if self.dispatcher.busy:
            raise EngineBusyError("The assistant is still working on the previous request")

        with self._recorder_lock:
            if self._recorder is None:
                self._recorder = Recorder(output_dir=self.config.recordings_dir)
            if self._recorder.is_recording:
                return
            if not self.state_manager.transition_to(AppState.RECORDING):
                raise EngineBusyError(f"Cannot record in state {self.state_manager.current_state.value}")
            try:
                self._recorder.start()
            except Exception:
                self.state_manager.transition_to(AppState.IDLE)
                raise

    async def stop_recording(self) -> DispatchResult:
        """Close the microphone (push-to-talk released) and handle the utterance"""
        with self._recorder_lock:
            recorder = self._recorder
            if recorder is None or not recorder.is_recording:
                raise HTTPException(status_code=400, detail="Not recording")
        path = await asyncio.to_thread(recorder.stop)

        if path is None:
            self.state_manager.transition_to(AppState.IDLE)
            raise HTTPException(status_code=400, detail="No audio captured")
        return await self._transcribe_file(path)

    # ========================================================================
    # Status
    # ========================================================================

    def get_status(self) -> dict:
        status = self.state_manager.get_state_info()
        status['speech_engine'] = self.speech_engine.state.value
        status['clients'] = len(self.connection_manager.active_connections)
        return status

    def reset(self) -> dict:
        """Return to idle with all triggers lowered"""
        if self.dispatcher.busy:
            raise EngineBusyError("Cannot reset while a request is being handled")
        self.state_manager.reset()
        return self.state_manager.get_state_info()


def build_server(config: Optional[AssistantConfig] = None) -> VoicePilotServer:
    """Create every engine from configuration"""
    config = config or load_config()
    state_manager = StateManager()
    connection_manager = ConnectionManager()
    synthesizer = BroadcastSpeechSynthesizer(connection_manager)

    registry = build_default_registry()
    model = FunctionCallingModel(registry, api_key=config.gemini_api_key, model_id=config.function_model)
    session_factory = SessionFactory(
        model_id=config.vision_model,
        client=model.client,
        temperature=config.temperature,
        top_k=config.top_k,
        top_p=config.top_p,
    )
    info_service = WeatherTimeService(
        config.openweather_api_key,
        base_url=config.openweather_url,
        timeout=config.request_timeout,
    )
    dispatcher = DispatchEngine(
        model,
        session_factory,
        info_service,
        synthesizer,
        state=state_manager,
        registry=registry,
        speech_batch_size=config.speech_batch_size,
    )
    speech_engine = SpeechToTextEngine(device=config.device, lora_adapter=config.lora_adapter)

    return VoicePilotServer(config, state_manager, speech_engine, dispatcher, connection_manager, synthesizer)


# ============================================================================
# REST API Endpoints
# ============================================================================

# Global server instance
server: Optional[VoicePilotServer] = None

router = APIRouter()


def _require_server() -> VoicePilotServer:
    if not server:
        raise HTTPException(status_code=503, detail="Server not initialized")
    return server


def _to_response(result: DispatchResult) -> DispatchResponse:
    return DispatchResponse(
        outcome=result.outcome.value,
        function_name=result.function_name,
        message=result.message,
        state=_require_server().get_status(),
    )


@router.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "VoicePilot API",
        "status": "running",
        "version": "1.0.0",
        "endpoints": {
            "status": "GET /status",
            "health": "GET /health",
            "audio_upload": "POST /audio",
            "command": "POST /command",
            "image": "POST /image",
            "recording_start": "POST /recording/start",
            "recording_stop": "POST /recording/stop",
            "stop_generating": "POST /generation/stop",
            "speech_done": "POST /speech/done",
            "trigger_ack": "POST /triggers/{name}/ack",
            "reset": "POST /reset",
            "websocket": "WS /ws",
        }
    }


@router.get("/health")
async def health():
    srv = _require_server()
    return {
        "status": "healthy",
        "speech_engine_ready": srv.speech_engine.is_initialized,
    }


@router.get("/status")
async def get_status():
    """Current snapshot: phase, busy indicator, triggers and visible text"""
    return _require_server().get_status()


@router.post("/audio", response_model=DispatchResponse)
async def upload_audio(file: UploadFile = File(...)):
    """Transcribe an uploaded WAV recording and dispatch the transcript"""
    srv = _require_server()
    data = await file.read()
    if not data:
        raise HTTPException(status_code=400, detail="Empty audio upload")
    return _to_response(await srv.handle_audio(data))


@router.post("/command", response_model=DispatchResponse)
async def command(request: CommandRequest):
    """Dispatch a typed utterance"""
    srv = _require_server()
    srv.ensure_not_recording()
    return _to_response(await srv.dispatcher.dispatch(request.text))


@router.post("/image", response_model=DispatchResponse)
async def upload_image(file: UploadFile = File(...), prompt: Optional[str] = Form(None)):
    """Stream an answer about the uploaded image for the last prompt (or `prompt`)"""
    srv = _require_server()
    data = await file.read()
    if not data:
        raise HTTPException(status_code=400, detail="Empty image upload")
    srv.ensure_not_recording()
    image = ImageInput(data=data, mime_type=file.content_type or "image/png")
    return _to_response(await srv.dispatcher.describe_image(image, prompt))


@router.post("/recording/start")
async def start_recording():
    srv = _require_server()
    srv.start_recording()
    return {"success": True, "state": srv.state_manager.current_state.value}


@router.post("/recording/stop", response_model=DispatchResponse)
async def stop_recording():
    srv = _require_server()
    return _to_response(await srv.stop_recording())


@router.post("/generation/stop")
async def stop_generating():
    """Cancel the streamed answer; harmless when nothing is streaming"""
    stopped = _require_server().dispatcher.stop_generating()
    return {"success": True, "stopped": stopped}


@router.post("/speech/done")
async def speech_done():
    """The frontend finished speaking"""
    srv = _require_server()
    srv.dispatcher.mark_speech_done()
    return {"success": True}


@router.post("/triggers/{name}/ack")
async def acknowledge_trigger(name: str):
    srv = _require_server()
    try:
        snapshot = srv.state_manager.acknowledge_trigger(name)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return snapshot.to_dict()


@router.post("/reset")
async def reset():
    """
    Emergency reset - return to idle state.

    Use this if the app gets stuck in a state.
    """
    return {
        "success": True,
        "message": "Server reset to idle state",
        "state": _require_server().reset(),
    }


# ============================================================================
# WebSocket Endpoint
# ============================================================================

@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """
    Real-time updates. The server sends:
      {"type": "state", "snapshot": {...}}            on connect
      {"type": "state_change", "old_state", "snapshot"} on every change
      {"type": "speak", "text": "..."}                for the frontend TTS

    Clients may send {"type": "stop_generating"} or {"type": "speech_done"}.
    """
    srv = _require_server()
    await srv.connection_manager.connect(websocket)
    try:
        await websocket.send_json({'type': 'state', 'snapshot': srv.get_status()})
        while True:
            message = await websocket.receive_json()
            kind = message.get('type') if isinstance(message, dict) else None
            if kind == 'stop_generating':
                srv.dispatcher.stop_generating()
            elif kind == 'speech_done':
                srv.dispatcher.mark_speech_done()
            elif kind == 'ping':
                await websocket.send_json({'type': 'pong'})
            else:
                logger.warning(f"Unknown WebSocket message: {message}")
    except WebSocketDisconnect:
        pass
    finally:
        srv.connection_manager.disconnect(websocket)


# ============================================================================
# FastAPI Application
# ============================================================================

async def _busy_handler(request: Request, exc: EngineBusyError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


def create_app(server_factory: Callable[[], VoicePilotServer] = build_server) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan context manager for startup/shutdown"""
        global server

        # Startup
        logger.info("Starting VoicePilot Server...")
        server = server_factory()
        await server.start()

        yield

        # Shutdown
        logger.info("Shutting down VoicePilot Server...")
        await server.shutdown()
        server = None

    app = FastAPI(
        title="VoicePilot API",
        description="API for the VoicePilot voice assistant",
        version="1.0.0",
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(EngineBusyError, _busy_handler)
    app.include_router(router)
    return app


def main():
    host = os.getenv("VOICEPILOT_HOST", "0.0.0.0")
    port = int(os.getenv("VOICEPILOT_PORT", "8000"))
    uvicorn.run(create_app(), host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()
