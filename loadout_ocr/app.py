from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator

from fastapi import FastAPI, File, HTTPException, Request, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel

from loadout_ocr.config import DetectionConfig, ServiceSettings, load_detection_config
from loadout_ocr.detection import DetectionPipeline, mint_detection_id
from loadout_ocr.errors import EngineNotReadyError, ImageDecodeError, SinkError
from loadout_ocr.imaging import decode_base64_image, decode_image_bytes, guess_extension
from loadout_ocr.models import DetectionRecord
from loadout_ocr.ocr import OCR_ENGINES, OcrEngine, get_ocr_engine, warm_ocr_engines
from loadout_ocr.store import JsonlDetectionStore, StoreAndBroadcastSink, SubscriberHub

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("loadout-ocr")


class ImageBase64Payload(BaseModel):
    """Pydantic model for a base64-encoded image payload.

    Attributes:
      image_b64: Base64-encoded image data. May be a data URL or raw base64.
    """

    image_b64: str


class DetectionResponse(BaseModel):
    success: bool
    detection: DetectionRecord


def create_app(
    settings: ServiceSettings | None = None,
    detection_config: DetectionConfig | None = None,
    ocr_engine: OcrEngine | None = None,
) -> FastAPI:
    """Build the HTTP service around a detection pipeline.

    Args:
      settings: Service settings; read from the environment when omitted.
      detection_config: Pipeline config; loaded from ``settings.config_path``
        (or the built-in defaults) when omitted.
      ocr_engine: Pre-built OCR engine. When omitted, the PaddleOCR engine for
        ``settings.ocr_language`` is warmed at startup.

    Returns:
      The FastAPI application.
    """
    settings = settings or ServiceSettings.from_env()
    detection_config = detection_config or load_detection_config(settings.config_path)
    logging.getLogger("loadout-ocr").setLevel(settings.log_level.upper())

    store = JsonlDetectionStore(settings.detections_path)
    hub = SubscriberHub()
    sink = StoreAndBroadcastSink(store, hub)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator:
        settings.data_dir.mkdir(parents=True, exist_ok=True)
        settings.upload_dir.mkdir(parents=True, exist_ok=True)
        store.ensure()
        engine = ocr_engine
        if engine is None:
            warm_ocr_engines((settings.ocr_language,))
            try:
                engine = get_ocr_engine(settings.ocr_language)
            except EngineNotReadyError as e:
                logger.error(f"❌ {e}; /upload and /detect will answer 503")
        app.state.pipeline = DetectionPipeline(detection_config, engine, sink, ocr_timeout_s=settings.ocr_timeout_s)
        hub.attach_loop(asyncio.get_running_loop())
        logger.info(f"✅ Ready: {len(detection_config.regions)} regions, store={store.path}")
        yield
        hub.attach_loop(None)

    app = FastAPI(title="Loadout OCR", lifespan=lifespan)
    app.state.store = store
    app.state.hub = hub
    app.mount("/uploads", StaticFiles(directory=settings.upload_dir, check_dir=False), name="uploads")

    def _pipeline(request: Request) -> DetectionPipeline:
        pipeline: DetectionPipeline | None = getattr(request.app.state, "pipeline", None)
        if pipeline is None or pipeline.engine is None:
            raise HTTPException(status_code=503, detail="OCR models not ready yet")
        return pipeline

    def _detect(pipeline: DetectionPipeline, image_bytes: bytes) -> DetectionResponse:
        try:
            image = decode_image_bytes(image_bytes)
        except ImageDecodeError as e:
            raise HTTPException(status_code=400, detail=str(e))

        now = datetime.now(timezone.utc)
        detection_id = mint_detection_id(now)
        filename = detection_id + guess_extension(image_bytes)
        try:
            (settings.upload_dir / filename).write_bytes(image_bytes)
        except OSError as e:
            raise HTTPException(status_code=500, detail=f"cannot store upload: {e}")

        try:
            record = pipeline.analyze(image, image_path=f"/uploads/{filename}", now=now, detection_id=detection_id)
        except SinkError as e:
            raise HTTPException(status_code=503, detail=f"detection store unavailable: {e}")
        return DetectionResponse(success=True, detection=record)

    @app.get("/ping")
    def ping() -> dict:
        """Liveness endpoint that reports warmed OCR languages."""
        return {"ok": True, "models": sorted(OCR_ENGINES.keys()), "subscribers": hub.subscriber_count}

    @app.post("/upload", response_model=DetectionResponse)
    def upload(request: Request, image: UploadFile = File(...)) -> DetectionResponse:
        """Analyze a multipart-uploaded screenshot (form field ``image``)."""
        pipeline = _pipeline(request)
        return _detect(pipeline, image.file.read())

    @app.post("/detect", response_model=DetectionResponse)
    def detect_base64(request: Request, payload: ImageBase64Payload) -> DetectionResponse:
        """Analyze a base64-encoded screenshot."""
        pipeline = _pipeline(request)
        try:
            image_bytes = decode_base64_image(payload.image_b64)
        except ImageDecodeError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return _detect(pipeline, image_bytes)

    @app.get("/detections", response_model=list[DetectionRecord])
    def detections() -> list[DetectionRecord]:
        """Every stored detection, oldest first."""
        return store.records()

    @app.websocket("/ws")
    async def live_detections(websocket: WebSocket) -> None:
        await websocket.accept()
        hub.register(websocket)
        try:
            await websocket.send_json({"event": "connected"})
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            hub.unregister(websocket)

    return app


app = create_app()
