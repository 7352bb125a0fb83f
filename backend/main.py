# backend/main.py

from fastapi import FastAPI, UploadFile, File, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from typing import Optional, List, Any
import datetime
import logging
import traceback

from config import get_settings
from errors import TrafficLensError
from models.pipeline import STAGE_ORDER
from services.analysis_service import VideoAnalysisService, get_analysis_service

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
# httpx logs full request URLs at INFO, and the Gemini key travels as a query parameter
logging.getLogger("httpx").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="TrafficLens Backend",
    version="0.3.0",
    description="Traffic video analysis with Gemini Vision"
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins.split(","),
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(TrafficLensError)
async def trafficlens_exception_handler(request: Request, exc: TrafficLensError):
    """Forward typed pipeline/adapter errors with their own status code"""
    logger.warning(f"{request.url.path} failed: {type(exc).__name__}: {exc.message}")
    return JSONResponse(status_code=exc.http_status, content=exc.to_response())


# Global exception handler to ensure errors return proper JSON with CORS headers
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Catch all unhandled exceptions and return proper JSON response"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "error": str(exc) or "Unknown error occurred",
            "type": type(exc).__name__,
            "traceback": traceback.format_exc() if settings.debug else None
        }
    )

# ---- Startup event ----

@app.on_event("startup")
async def startup_event():
    """Application startup"""
    logger.info("=" * 60)
    logger.info("TrafficLens Backend Starting")
    logger.info("=" * 60)
    logger.info(f"Environment: {settings.app_env}")
    logger.info(f"Gemini Model: {settings.gemini_model}")
    logger.info(f"Gemini API Key: {'Yes' if settings.gemini_api_key else 'No'}")
    logger.info(f"Frames per video: {settings.frame_count}")
    logger.info("=" * 60)

    if not settings.gemini_api_key:
        logger.warning("No Gemini API key configured! Analysis requests will fail until it is set.")
        logger.warning("Set GEMINI_API_KEY in .env file to enable analysis.")


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown - cancel running analysis jobs"""
    logger.info("TrafficLens Backend Shutting Down")
    try:
        await get_analysis_service().shutdown()
    except Exception as e:
        logger.error(f"Error during analysis job shutdown: {e}")
    logger.info("Shutdown complete")

# ---- Pydantic models ----

class AnalyzeVideoRequest(BaseModel):
    frames: Optional[List[Any]] = None  # base64-encoded JPEG strings
    fileName: Optional[str] = None
    fileSize: Optional[float] = None

# ---- Health check endpoint ----

@app.get("/api/health")
async def health_check(service: VideoAnalysisService = Depends(get_analysis_service)):
    """Health check endpoint to verify backend is running"""
    return {
        "status": "ok",
        "version": app.version,
        "model": service.analyzer.model,
        "credentialConfigured": service.analyzer.credential_configured,
        "timestamp": datetime.datetime.utcnow().isoformat() + "Z"
    }


@app.get("/api/stages")
async def list_stages():
    """Ordered pipeline stages for progress displays"""
    return {"stages": [stage.to_dict() for stage in STAGE_ORDER]}

# ---- Analysis endpoints ----

@app.post("/api/analyze-video")
async def analyze_video(
    req: AnalyzeVideoRequest,
    service: VideoAnalysisService = Depends(get_analysis_service),
):
    """
    Analyze frames already extracted by the client.

    Returns the analysis result JSON, or ``{"error": ..., "setupLink"?: ...}``
    with 400 (no frames), 413 (too large), 401 (invalid key) or
    500 (missing key, empty/unparsable model reply).
    """
    result = await service.submit_frames(req.frames, req.fileName, req.fileSize)
    return result.model_dump(mode="json")


async def _read_upload(file: UploadFile, service: VideoAnalysisService) -> bytes:
    # Declared size is checked before the body is buffered
    if file.size is not None:
        service.validate_upload(file.content_type, file.size)
    content = await file.read()
    service.validate_upload(file.content_type, len(content))
    return content


@app.post("/api/videos/analyze")
async def analyze_uploaded_video(
    file: UploadFile = File(...),
    service: VideoAnalysisService = Depends(get_analysis_service),
):
    """Sample an uploaded video server-side and analyze it (blocking)"""
    content = await _read_upload(file, service)
    file_name = file.filename or "video"
    path = service.store_upload(content, file_name)
    run = service.pipeline.create_run(file_name)
    try:
        await service.analyze_video_file(path, file_name, len(content), run=run)
    finally:
        service.discard_upload(path)
    return run.to_dict()


@app.post("/api/jobs", status_code=202)
async def create_analysis_job(
    file: UploadFile = File(...),
    service: VideoAnalysisService = Depends(get_analysis_service),
):
    """Start a background analysis; poll GET /api/jobs/{job_id} for progress"""
    content = await _read_upload(file, service)
    file_name = file.filename or "video"
    path = service.store_upload(content, file_name)
    run = service.start_job(path, file_name, len(content))
    return run.to_dict()


@app.get("/api/jobs")
async def list_analysis_jobs(
    service: VideoAnalysisService = Depends(get_analysis_service),
):
    """Snapshots of tracked jobs, oldest first"""
    return {"jobs": [run.to_dict() for run in service.list_jobs()]}


@app.get("/api/jobs/{job_id}")
async def get_analysis_job(
    job_id: str,
    service: VideoAnalysisService = Depends(get_analysis_service),
):
    """Progress, completed stages and result or error of a job"""
    return service.get_job(job_id).to_dict()


@app.delete("/api/jobs/{job_id}")
async def cancel_analysis_job(
    job_id: str,
    service: VideoAnalysisService = Depends(get_analysis_service),
):
    """Cancel a running job (reset)"""
    return service.cancel_job(job_id).to_dict()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.app_host, port=settings.app_port)
