"""
Voice Pipeline Service
Exposes voice activity, noise, language, command and calibration processing over HTTP
"""

import json
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import structlog
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from .config import settings
from .errors import (
    InitializationFailed,
    InvalidImportData,
    NoCalibrationSamples,
    PipelineNotInitialized,
    ProfileNotFound,
    SessionFull,
    SessionNotActive,
)
from .metrics import metrics_endpoint, record_command, record_language, record_request
from .models import (
    CalibrationSampleInput,
    CalibrationSession,
    CreateProfileRequest,
    Language,
    OptimalSettings,
    ProcessRequest,
    StartCalibrationRequest,
    VoiceCommand,
    VoiceProcessingResult,
    VoiceProfile,
)
from .orchestrator import VoicePipeline
from .profile_store import create_profile_store

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    logger.info("Starting Voice Pipeline Service")

    pipeline = VoicePipeline(profile_store=create_profile_store())
    pipeline.on_language_detected(lambda result: record_language(result.detected_language.value, result.method.value))
    pipeline.on_voice_command(lambda result: record_command(result.command.action.value))
    try:
        pipeline.initialize()
    except InitializationFailed as e:
        logger.error("Voice pipeline failed to initialize", error=str(e))
    app.state.pipeline = pipeline

    yield

    logger.info("Shutting down Voice Pipeline Service")
    pipeline.shutdown()


app = FastAPI(
    title="Voice Pipeline Service",
    description="Voice activity detection, noise cancellation, language detection, voice commands and calibration",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _pipeline() -> VoicePipeline:
    return app.state.pipeline


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "voice-pipeline",
        "initialized": _pipeline().is_initialized(),
    }


@app.get("/status")
async def get_status():
    """Feature status and processing statistics"""
    pipeline = _pipeline()
    return {
        "features": pipeline.get_feature_status(),
        "support": pipeline.support,
        "stats": pipeline.get_stats(),
        "commands": pipeline.commands.get_command_stats(),
        "calibration": pipeline.calibration.get_calibration_stats(),
        "noise": pipeline.noise.get_stats(),
        "recommendations": pipeline.get_recommendations(),
    }


@app.post("/process", response_model=VoiceProcessingResult)
async def process_voice_input(request: ProcessRequest):
    """Run one utterance (and optional frame) through the pipeline"""
    start = time.perf_counter()
    try:
        result = _pipeline().process_voice_input(
            request.text,
            request.samples,
            request.current_language,
            request.sample_rate,
        )
    except PipelineNotInitialized as e:
        record_request("process", "unavailable")
        raise HTTPException(status_code=503, detail=str(e))
    except Exception as e:
        logger.error("Voice processing failed", error=str(e))
        record_request("process", "error")
        raise HTTPException(status_code=500, detail="Voice processing failed")

    record_request("process", "success", time.perf_counter() - start)
    return result


@app.get("/commands", response_model=List[VoiceCommand])
async def list_commands(language: Optional[str] = None):
    """List registered voice commands"""
    return _pipeline().commands.get_commands(language)


@app.get("/commands/help")
async def command_help(language: Language = Language.ENGLISH):
    return {"language": language.value, "help": _pipeline().commands.get_help_text(language)}


@app.post("/commands", response_model=VoiceCommand)
async def add_command(command: VoiceCommand):
    """Register or replace a voice command"""
    added = _pipeline().commands.add_command(command)
    record_request("commands", "success")
    return added


@app.delete("/commands/{command_id}")
async def remove_command(command_id: str):
    if not _pipeline().commands.remove_command(command_id):
        raise HTTPException(status_code=404, detail=f"Command not found: {command_id}")
    return {"status": "removed", "command_id": command_id}


@app.post("/profiles", response_model=VoiceProfile)
async def create_profile(request: CreateProfileRequest):
    """Create an empty voice profile"""
    return _pipeline().create_voice_profile(request.name, request.language)


@app.get("/profiles/{profile_id}/settings", response_model=OptimalSettings)
async def get_optimal_settings(profile_id: str):
    """Recognition, synthesis and VAD settings derived from a calibrated profile"""
    pipeline = _pipeline()
    if pipeline.calibration.get_profile(profile_id) is None:
        raise HTTPException(status_code=404, detail=f"Profile not found: {profile_id}")
    settings_for_profile = pipeline.calibration.get_optimal_settings(profile_id)
    if settings_for_profile is None:
        raise HTTPException(status_code=409, detail="Profile has not been calibrated yet")
    return settings_for_profile


@app.post("/profiles/{profile_id}/calibration", response_model=CalibrationSession)
async def start_calibration(profile_id: str, request: Optional[StartCalibrationRequest] = None):
    """Start a calibration session for a profile"""
    total_steps = request.total_steps if request else None
    try:
        return _pipeline().start_calibration(profile_id, total_steps)
    except ProfileNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@app.post("/calibration/{session_id}/samples", response_model=CalibrationSession)
async def add_calibration_sample(session_id: str, sample: CalibrationSampleInput):
    try:
        return _pipeline().calibration.add_calibration_sample(session_id, sample)
    except (SessionNotActive, SessionFull) as e:
        raise HTTPException(status_code=409, detail=str(e))


@app.post("/calibration/{session_id}/complete", response_model=VoiceProfile)
async def complete_calibration(session_id: str):
    """Analyse the session and store the result on its profile"""
    try:
        profile = _pipeline().calibration.complete_calibration(session_id)
    except SessionNotActive as e:
        raise HTTPException(status_code=409, detail=str(e))
    except NoCalibrationSamples as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ProfileNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    record_request("calibration", "success")
    return profile


@app.post("/calibration/{session_id}/cancel")
async def cancel_calibration(session_id: str):
    cancelled = _pipeline().calibration.cancel_calibration(session_id)
    return {"session_id": session_id, "cancelled": cancelled}


@app.get("/config/export")
async def export_config():
    """Configuration, profiles and commands as one JSON document"""
    return json.loads(_pipeline().export_config())


@app.post("/config/import")
async def import_config(payload: Dict[str, Any]):
    try:
        _pipeline().import_config(payload)
    except InvalidImportData as e:
        record_request("config_import", "invalid")
        raise HTTPException(status_code=400, detail=str(e))
    return {"status": "imported"}


app.add_api_route("/metrics", metrics_endpoint, methods=["GET"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
