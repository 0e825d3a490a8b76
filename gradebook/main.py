"""FastAPI entrypoint for the assessment grading engine."""

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from gradebook.database import create_db_and_tables
from gradebook.exceptions import (
    IncompleteGrading,
    InvalidAnswerShape,
    InvalidEffectiveDate,
    InvalidTransition,
    RecordNotFound,
)
from gradebook.logging_config import configure_logging
from gradebook.routers import assessments as assessments_router_module
from gradebook.routers import assignments as assignments_router_module
from gradebook.routers import class_subjects as class_subjects_router_module
from gradebook.routers import reports as reports_router_module

logger = logging.getLogger(__name__)

app = FastAPI(title="School Assessment Grading Engine")


@app.exception_handler(InvalidTransition)
async def invalid_transition_handler(request: Request, exc: InvalidTransition):
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={
            "detail": str(exc),
            "current_state": exc.current_state,
            "attempted": exc.attempted,
        },
    )


@app.exception_handler(IncompleteGrading)
async def incomplete_grading_handler(request: Request, exc: IncompleteGrading):
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"detail": str(exc), "pending_question_ids": exc.pending_question_ids},
    )


@app.exception_handler(InvalidEffectiveDate)
async def invalid_effective_date_handler(request: Request, exc: InvalidEffectiveDate):
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})


@app.exception_handler(InvalidAnswerShape)
async def invalid_answer_shape_handler(request: Request, exc: InvalidAnswerShape):
    return JSONResponse(
        status_code=422,
        content={"detail": str(exc), "question_id": exc.question_id},
    )


@app.exception_handler(RecordNotFound)
async def not_found_handler(request: Request, exc: RecordNotFound):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


# Routers
app.include_router(assessments_router_module.router)
app.include_router(assignments_router_module.router, tags=["assignments"])
app.include_router(class_subjects_router_module.router)
app.include_router(reports_router_module.router)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.on_event("startup")
def on_startup():
    """Configure logging and initialize the database schema."""
    configure_logging()
    create_db_and_tables()
    logger.info("Grading engine started")
