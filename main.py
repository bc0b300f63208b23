"""
Main entry point.
Serves the FastAPI application defined in app.main.
"""
from app.core.config import get_settings
from app.main import app  # noqa: F401

settings = get_settings()


if __name__ == "__main__":
    import uvicorn
    
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower()
    )
