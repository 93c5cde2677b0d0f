"""Request-scoped dependencies"""
from fastapi import HTTPException, Request, status

from mailsift.core.pipeline import MailPipeline


def get_pipeline(request: Request) -> MailPipeline:
    """The pipeline built once by the app lifespan."""
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Pipeline not initialized"
        )
    return pipeline
