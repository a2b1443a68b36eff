# backend/main.py

from fastapi import FastAPI, Depends, HTTPException, UploadFile, File, Form
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session
import pandas as pd
import io
import logging

from database import SessionLocal, get_db, init_db
from models import Exam
import schemas
from errors import AttemptError, StandardExamQuestionError
from adaptive_engine import AdaptiveEngine
from difficulty_scoring import DifficultyScoringService
from reports import PDFExportService
from services import (
    AttemptService,
    QuestionService,
    ensure_standard_exam_questions,
    format_attempt_summary,
)
from transactions import TransactionCoordinator
from config import get_config

# Get configuration
config = get_config()
config.validate_config()

# Setup logging
handlers = [logging.StreamHandler()]
if config.LOGGING_CONFIG["log_file"]:
    handlers.append(logging.FileHandler(config.LOGGING_CONFIG["log_file"]))
logging.basicConfig(
    level=getattr(logging, config.LOGGING_CONFIG["level"]),
    format=config.LOGGING_CONFIG["format"],
    handlers=handlers
)
logger = logging.getLogger(__name__)

# Create database tables
init_db()

app = FastAPI(
    title=config.API_CONFIG["title"],
    version=config.API_CONFIG["version"],
    description="Computer-adaptive exam engine"
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.API_CONFIG["cors_origins"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Initialize services
question_service = QuestionService()
attempt_service = AttemptService(TransactionCoordinator(SessionLocal), AdaptiveEngine(), question_service)
scoring_service = DifficultyScoringService()
pdf_export_service = PDFExportService()


def get_attempt_service() -> AttemptService:
    return attempt_service


def get_scoring_service() -> DifficultyScoringService:
    return scoring_service


def _http_error(error: AttemptError) -> HTTPException:
    return HTTPException(
        status_code=error.status_code,
        detail={"code": error.code, "message": str(error)},
    )


@app.get("/health")
def health():
    return {"status": "ok"}


# ========== ATTEMPT ENDPOINTS ==========

@app.post("/api/attempts/start", response_model=schemas.AttemptProgress)
def start_attempt(payload: schemas.AttemptStart,
                  service: AttemptService = Depends(get_attempt_service)):
    """Start an adaptive attempt and present its first question"""
    try:
        progress = service.start_attempt(payload.exam_id, payload.user_id)
    except AttemptError as e:
        raise _http_error(e)
    if progress is None:
        raise HTTPException(status_code=400, detail="Could not start attempt")
    return progress


@app.get("/api/attempts/{attempt_id}/current", response_model=schemas.AttemptProgress)
def get_current_question(attempt_id: int, user_id: int,
                         service: AttemptService = Depends(get_attempt_service)):
    """Resume an attempt: current question, next question, or completed summary"""
    try:
        progress = service.ensure_current_question(attempt_id, user_id)
    except AttemptError as e:
        raise _http_error(e)
    if progress is None:
        raise HTTPException(status_code=404,
                            detail={"code": "ATTEMPT_NOT_FOUND", "message": "Attempt not found"})
    return progress


@app.post("/api/attempts/{attempt_id}/answer", response_model=schemas.AnswerResult)
def submit_answer(attempt_id: int, answer: schemas.AnswerSubmission,
                  service: AttemptService = Depends(get_attempt_service)):
    """Submit an answer for the current question"""
    try:
        return service.record_answer(attempt_id, answer.user_id,
                                     answer.question_id, answer.choice_id)
    except AttemptError as e:
        if e.status_code >= 500:
            logger.error(f"Error in submit_answer: {e}", exc_info=True)
        raise _http_error(e)


@app.post("/api/attempts/{attempt_id}/finish", response_model=schemas.AttemptSummary)
def finish_attempt(attempt_id: int, payload: schemas.AttemptFinish,
                   service: AttemptService = Depends(get_attempt_service)):
    """Finish an attempt early (idempotent)"""
    try:
        snapshot = service.finish_attempt(attempt_id, payload.user_id)
    except AttemptError as e:
        raise _http_error(e)
    return format_attempt_summary(snapshot)


@app.get("/api/attempts/{attempt_id}/summary", response_model=schemas.AttemptSummary)
def get_attempt_summary(attempt_id: int, user_id: int,
                        service: AttemptService = Depends(get_attempt_service)):
    try:
        snapshot = service.get_attempt(attempt_id, user_id)
    except AttemptError as e:
        raise _http_error(e)
    return format_attempt_summary(snapshot)


@app.get("/api/attempts/{attempt_id}/export-pdf")
def export_attempt_pdf(attempt_id: int, user_id: int,
                       service: AttemptService = Depends(get_attempt_service)):
    """Download the attempt report as PDF"""
    try:
        report = service.get_attempt_report(attempt_id, user_id)
    except AttemptError as e:
        raise _http_error(e)

    try:
        pdf_buffer = pdf_export_service.generate_attempt_pdf(report)
    except Exception as e:
        logger.error(f"Error exporting PDF for attempt {attempt_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Failed to generate PDF: {str(e)}")

    return StreamingResponse(
        pdf_buffer,
        media_type="application/pdf",
        headers={"Content-Disposition": f"attachment; filename=attempt_{attempt_id}.pdf"}
    )


# ========== QUESTION BANK ==========

@app.post("/api/questions/upload")
async def upload_questions(file: UploadFile = File(...), created_by_id: int = Form(...),
                           db: Session = Depends(get_db)):
    """
    Upload questions from an Excel file (.xlsx or .xls).

    Columns: subject, grade_level, body, explanation, choice_1..choice_n,
    answer (number of the correct choice), optional difficulty (1-5).
    """
    filename = (file.filename or "").lower()
    if not (filename.endswith('.xlsx') or filename.endswith('.xls')):
        raise HTTPException(status_code=400, detail="File must be Excel format (.xlsx or .xls)")

    content = await file.read()
    try:
        df = pd.read_excel(io.BytesIO(content))
        logger.info(f"Read Excel file with {len(df)} rows")
    except Exception as e:
        raise HTTPException(status_code=400, detail=f"Could not read Excel file: {str(e)}")

    try:
        imported = question_service.import_questions_from_df(db, df, created_by_id)
    except ValueError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e))

    return {"imported": imported}


@app.post("/api/questions/{question_id}/score", response_model=schemas.DifficultyScoreOut)
def score_question(question_id: int, payload: schemas.DifficultyScoreRequest,
                   db: Session = Depends(get_db),
                   scoring: DifficultyScoringService = Depends(get_scoring_service)):
    """Append a fresh difficulty score for a teacher's question"""
    try:
        return scoring.score_question(db, question_id, payload.teacher_id)
    except AttemptError as e:
        raise _http_error(e)


# ========== STANDARD EXAMS ==========

@app.post("/api/exams/{exam_id}/standard-questions", response_model=schemas.StandardLinkResult)
def link_standard_questions(exam_id: int, payload: schemas.StandardLinkRequest,
                            db: Session = Depends(get_db)):
    """Link a fixed question set to a standard (non-adaptive) exam"""
    exam = db.query(Exam).filter(
        Exam.id == exam_id,
        Exam.created_by_id == payload.teacher_id,
    ).first()
    if not exam:
        raise HTTPException(status_code=404, detail="Exam not found")
    if exam.is_adaptive:
        raise HTTPException(status_code=400, detail="Adaptive exams select questions per attempt")

    try:
        linked = ensure_standard_exam_questions(
            db, exam.id, exam.created_by_id, exam.subject, exam.question_count,
            force=payload.force,
        )
        db.commit()
    except StandardExamQuestionError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail={
            "code": e.code,
            "message": str(e),
            "required": e.required,
            "available": e.available,
        })

    return {"exam_id": exam.id, "linked": linked}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host=config.API_CONFIG["host"],
        port=config.API_CONFIG["port"]
    )
