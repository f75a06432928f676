"""
server.py — Chat Voice Engine · FastAPI Control Plane
=====================================================
Hosts the voice pipeline next to the chat backend.  Speech playback runs
on the server's own synthesis engine; recognition runs in the browser and
streams its events here, where the session controller arbitrates them.

Endpoints
---------
  GET  /health              Service liveness + playback and listening state
  GET  /config              Current runtime configuration
  PUT  /config              Partial update (nested merge), persisted to disk
  GET  /voices              Voices reported by the synthesis engine
  POST /voices/preview      Speak a sample sentence with a named voice
  POST /speak               Speak assistant text (chunked, sequential)
  POST /speak/pause         Pause the active playback
  POST /speak/resume        Resume the active playback
  POST /speak/cancel        Cancel the active playback
  WS   /ws/recognition      Browser recognizer bridge (see speech.backends.ws_recognition)
  WS   /ws/logs             Real-time log stream

Concurrency model
-----------------
One asyncio loop.  One playback session at a time (a new /speak supersedes
the previous one).  One /ws/recognition connection at a time drives the
shared VoiceController, so listening and speaking exclude each other
across the HTTP and WebSocket surfaces.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional, Set

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from config import VoiceEngineConfig
from speech.backends.ws_recognition import BrowserRecognition
from speech.capabilities import SynthesisCapability
from speech.controller import VoiceController
from speech.playback import preview_voice

load_dotenv()

# ---------------------------------------------------------------------------
# WebSocket log broadcaster (defined early — referenced by logging handler)
# ---------------------------------------------------------------------------

class LogBroadcaster:
    """Fan-out hub for real-time log events to all connected WebSocket clients."""
    def __init__(self) -> None:
        self._clients: Set[WebSocket] = set()
        self._history: list[dict] = []  # last 500 events replayed to late-joiners

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        self._clients.add(ws)
        for event in self._history[-500:]:
            try:
                await ws.send_text(json.dumps(event))
            except Exception:
                break

    def disconnect(self, ws: WebSocket) -> None:
        self._clients.discard(ws)

    async def broadcast(self, event: dict) -> None:
        self._history.append(event)
        if len(self._history) > 500:
            self._history = self._history[-500:]
        dead: Set[WebSocket] = set()
        for ws in list(self._clients):
            try:
                await ws.send_text(json.dumps(event))
            except Exception:
                dead.add(ws)
        self._clients -= dead


broadcaster = LogBroadcaster()


class _WsBroadcastHandler(logging.Handler):
    """Logging handler that forwards every voice engine log record to all WS clients."""
    def emit(self, record: logging.LogRecord) -> None:
        event = {
            "source": "server",
            "level":  record.levelname,
            "logger": record.name,
            "msg":    self.format(record),
            "ts":     record.created,
        }
        try:
            loop = asyncio.get_running_loop()
            loop.call_soon_threadsafe(
                lambda: loop.create_task(broadcaster.broadcast(event))
            )
        except RuntimeError:
            pass  # no event loop in this thread (startup, TTS worker)


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
_LOG_FORMAT = "%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s"

logging.basicConfig(
    level=logging.DEBUG if os.getenv("VOICE_DEBUG") else logging.INFO,
    format=_LOG_FORMAT,
    datefmt="%H:%M:%S",
)
log = logging.getLogger("voice_engine.server")

# Attach WS broadcast handler AFTER basicConfig has run
_ws_handler = _WsBroadcastHandler()
_ws_handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt="%H:%M:%S"))
logging.getLogger("voice_engine").addHandler(_ws_handler)

# ---------------------------------------------------------------------------
# Config (from environment)
# ---------------------------------------------------------------------------
CONFIG_PATH = os.getenv("VOICE_CONFIG_PATH", "voice_config.json")


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------

class SpeakRequest(BaseModel):
    """Assistant text plus optional per-call overrides of the speak defaults."""
    text:                str = Field(min_length=1)
    rate:                Optional[float] = Field(default=None, ge=0.1, le=10.0)
    pitch:               Optional[float] = Field(default=None, ge=0.0, le=2.0)
    volume:              Optional[float] = Field(default=None, ge=0.0, le=1.0)
    voice_type:          Optional[str] = None
    clean_special_chars: Optional[bool] = None
    wait:                bool = False     # block until playback finishes


class PreviewRequest(BaseModel):
    name: str = Field(min_length=1)
    text: Optional[str] = None


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def _build_voice(app: FastAPI) -> VoiceController:
    return VoiceController(None, app.state.synthesis, config=app.state.config)


def create_app(
    synthesis: Optional[SynthesisCapability] = None,
    config_path: str = CONFIG_PATH,
) -> FastAPI:
    """Build the control plane.  Without an injected engine, the offline pyttsx3 engine is used."""

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        owned = None
        if app.state.synthesis is None:
            from speech.backends.local_tts import LocalSynthesis
            owned = LocalSynthesis()
            app.state.synthesis = owned
        app.state.voice = _build_voice(app)
        log.info("event=server_start config_path=%s", config_path)
        yield
        log.info("event=server_shutdown")
        app.state.voice.cancel_speech()
        for task in list(app.state.tasks):
            task.cancel()
        if app.state.tasks:
            await asyncio.gather(*app.state.tasks, return_exceptions=True)
        if owned is not None:
            owned.close()
        log.info("event=server_stopped")

    app = FastAPI(
        title="Chat Voice Engine",
        version="1.0.0",
        description="Speech recognition sessions and chunked speech playback",
        lifespan=_lifespan,
    )
    app.state.config = VoiceEngineConfig.load(config_path)
    app.state.config_path = config_path
    app.state.synthesis = synthesis
    app.state.tasks = set()

    # Allow file:// and any local origin to reach the API (dev only)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_routes(app)
    return app


def _voice(request: Request) -> VoiceController:
    return request.app.state.voice


def _track(app: FastAPI, coro, name: str) -> asyncio.Task:
    task = asyncio.create_task(coro, name=name)
    app.state.tasks.add(task)
    task.add_done_callback(app.state.tasks.discard)
    return task


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

def _register_routes(app: FastAPI) -> None:

    @app.get("/health")
    async def health(request: Request) -> JSONResponse:
        """Liveness probe."""
        voice = _voice(request)
        catalog = voice.playback.catalog
        return JSONResponse({
            "status":        "ok",
            "speaking":      voice.is_speaking,
            "listening":     voice.is_listening,
            "voices_cached": bool(catalog and catalog.cached),
        })

    @app.get("/config")
    async def get_config(request: Request) -> JSONResponse:
        return JSONResponse(request.app.state.config.model_dump())

    @app.put("/config")
    async def put_config(request: Request) -> JSONResponse:
        """Merge a partial config, persist it, and rebuild the playback pipeline."""
        try:
            patch = await request.json()
        except Exception as exc:
            raise HTTPException(status_code=400, detail=f"Invalid JSON: {exc}") from exc
        if not isinstance(patch, dict):
            raise HTTPException(status_code=400, detail="Config patch must be a JSON object.")

        try:
            updated = request.app.state.config.merge_patch(patch)
        except ValidationError as exc:
            raise HTTPException(
                status_code=422,
                detail=exc.errors(include_url=False, include_context=False),
            ) from exc

        request.app.state.voice.cancel_speech()
        request.app.state.config = updated
        request.app.state.voice = _build_voice(request.app)
        try:
            updated.save(request.app.state.config_path)
        except OSError as exc:
            log.error("event=config_save_failed path=%s error=%s", request.app.state.config_path, exc)
            raise HTTPException(status_code=500, detail="Config applied but could not be saved.") from exc
        log.info("event=config_updated keys=%s", sorted(patch))
        return JSONResponse(updated.model_dump())

    @app.get("/voices")
    async def list_voices(request: Request) -> list[dict]:
        catalog = _voice(request).playback.catalog
        if catalog is None:
            raise HTTPException(status_code=503, detail="Text-to-speech is not available.")
        return await catalog.describe()

    @app.post("/voices/preview")
    async def voices_preview(body: PreviewRequest, request: Request) -> JSONResponse:
        voice = _voice(request)
        if voice.is_listening:
            raise HTTPException(status_code=409, detail="Recognition in progress.")
        kwargs = {"text": body.text} if body.text else {}
        described = await preview_voice(voice.playback, body.name, **kwargs)
        if described is None:
            raise HTTPException(status_code=404, detail=f"No voice matching '{body.name}'.")
        return JSONResponse(described)

    @app.post("/speak", status_code=status.HTTP_202_ACCEPTED)
    async def speak(body: SpeakRequest, request: Request) -> JSONResponse:
        voice = _voice(request)
        options = request.app.state.config.synthesis.speak_options(
            rate=body.rate,
            pitch=body.pitch,
            volume=body.volume,
            voice_type=body.voice_type,
            clean_special_chars=body.clean_special_chars,
        )
        log.info("event=speak_request chars=%d wait=%s", len(body.text), body.wait)
        if voice.is_listening:
            raise HTTPException(status_code=409, detail="Cannot speak while listening.")

        if body.wait:
            result = await voice.speak(body.text, options)
            if result is None:
                raise HTTPException(status_code=409, detail="Cannot speak while listening.")
            return JSONResponse(
                status_code=status.HTTP_200_OK,
                content={"status": result.status.value, "spoken": result.spoken,
                         "failed": result.failed, "error": result.error},
            )

        _track(request.app, voice.speak(body.text, options), name="speak_request")
        return JSONResponse({"status": "speaking"}, status_code=status.HTTP_202_ACCEPTED)

    @app.post("/speak/pause")
    async def speak_pause(request: Request) -> JSONResponse:
        _voice(request).pause_speech()
        return JSONResponse({"status": "paused"})

    @app.post("/speak/resume")
    async def speak_resume(request: Request) -> JSONResponse:
        _voice(request).resume_speech()
        return JSONResponse({"status": "resumed"})

    @app.post("/speak/cancel")
    async def speak_cancel(request: Request) -> JSONResponse:
        _voice(request).cancel_speech()
        return JSONResponse({"status": "cancelled"})

    @app.websocket("/ws/recognition")
    async def ws_recognition(ws: WebSocket) -> None:
        """
        Browser recognizer bridge.  Besides recognizer events the client may send
        control messages:
            {"type": "control", "action": "stop" | "abort" | "restart"}
            {"type": "control", "action": "threshold", "value": 0.6}
        """
        await ws.accept()
        voice = ws.app.state.voice
        if voice.is_listening:
            log.warning("event=ws_recognition_refused reason=listening remote=%s", ws.client)
            await ws.send_json({"type": "session_end", "error": "Recognition already in progress.",
                                "recoverable": False})
            await ws.close(code=status.WS_1013_TRY_AGAIN_LATER)
            return

        bridge = BrowserRecognition(ws.send_json)
        voice.attach_recognition(bridge)
        log.info("event=ws_recognition_connected remote=%s", ws.client)

        handle = voice.start_listening(
            on_result=lambda text, is_final: bridge.notify(
                {"type": "transcript", "text": text, "is_final": is_final}),
            on_end=lambda result: bridge.notify({"type": "session_end", **result}),
        )
        if handle is None and voice.is_speaking:
            bridge.notify({"type": "session_end", "error": "Cannot listen while speaking.",
                           "recoverable": False})
        try:
            while True:
                raw = await ws.receive_text()
                try:
                    message = json.loads(raw)
                except ValueError:
                    log.warning("event=ws_recognition_bad_json len=%d", len(raw))
                    continue
                if not isinstance(message, dict):
                    continue
                if message.get("type") != "control":
                    bridge.dispatch(message)
                    continue
                action = message.get("action")
                if action == "stop":
                    voice.recognizer.stop()
                elif action == "abort":
                    voice.stop_listening()
                elif action == "restart":
                    if not voice.restart_listening() and voice.is_speaking:
                        bridge.notify({"type": "session_end", "error": "Cannot listen while speaking.",
                                       "recoverable": False})
                elif action == "threshold":
                    accepted = voice.recognizer.adjust_threshold(message.get("value"))
                    bridge.notify({"type": "threshold", "accepted": accepted,
                                   "value": voice.recognizer.confidence_threshold})
                else:
                    log.warning("event=ws_recognition_unknown_action action=%r", action)
        except WebSocketDisconnect:
            pass
        finally:
            voice.attach_recognition(None)
            await bridge.close()
            log.info("event=ws_recognition_disconnected remote=%s", ws.client)

    @app.websocket("/ws/logs")
    async def ws_logs(ws: WebSocket) -> None:
        """
        Real-time log stream.  Sends every voice engine log event as a JSON object:
        {"source": "server", "level": "INFO", "logger": "<name>", "msg": "<line>", "ts": <unix float>}
        """
        await broadcaster.connect(ws)
        log.info("event=ws_log_client_connected remote=%s", ws.client)
        try:
            while True:
                # Keep the connection alive; we only send, never receive
                await ws.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            broadcaster.disconnect(ws)
            log.info("event=ws_log_client_disconnected remote=%s", ws.client)


app = create_app()
