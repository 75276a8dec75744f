"""FastAPI server that exposes the dashboard endpoints."""

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .bot import QuizWhizBot
from .exceptions import (
    AnswerAlreadyRecorded,
    ChannelAlreadyBound,
    ChunkNotFound,
    DuplicateRecipientError,
    DuplicateSessionError,
    InvalidAnswerFormat,
    InvalidQuizContent,
    PersistenceError,
    QuizClosedError,
    QuizNotFound,
    QuizWhizError,
    RecipientNotFound,
    SessionAlreadyFinalizing,
    SessionExpired,
    SessionNotFinished,
    SessionNotFound,
)
from .models import DispatchReport, Recipient, Role
from .quiz_controller import QuizController
from .quiz_generator import QuizGenerator
from .recipient_manager import RecipientManager

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR = (
    ((RecipientNotFound, SessionNotFound, QuizNotFound, ChunkNotFound), 404),
    ((InvalidAnswerFormat, InvalidQuizContent), 400),
    ((ChannelAlreadyBound, DuplicateRecipientError, DuplicateSessionError, SessionExpired,
      SessionAlreadyFinalizing, SessionNotFinished, AnswerAlreadyRecorded, QuizClosedError), 409),
    ((PersistenceError,), 503),
)


def status_for_error(error: QuizWhizError) -> int:
    for error_types, status in _STATUS_BY_ERROR:
        if isinstance(error, error_types):
            return status
    return 500


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class SendToClassPayload(_Payload):
    quiz_id: str = Field(alias="quizId")
    class_id: str = Field(alias="classId")
    subject_id: Optional[str] = Field(default=None, alias="subjectId")
    teacher_id: Optional[str] = Field(default=None, alias="teacherId")


class SendToStudentsPayload(_Payload):
    quiz_id: str = Field(alias="quizId")
    student_ids: List[str] = Field(alias="studentIds", min_length=1)
    teacher_id: Optional[str] = Field(default=None, alias="teacherId")


class GenerateQuizPayload(_Payload):
    chunk_id: str = Field(alias="chunkId")
    class_level: str = Field(alias="classLevel")
    subject: str
    class_id: Optional[str] = Field(default=None, alias="classId")
    teacher_id: Optional[str] = Field(default=None, alias="teacherId")


class PdfUploadPayload(_Payload):
    file_path: str = Field(alias="filePath")
    textbook_id: str = Field(alias="textbookId")


class RegisterStudentPayload(_Payload):
    name: str
    phone: str
    class_id: Optional[str] = Field(default=None, alias="classId")
    role: Role = Role.TAKER


class BulkRegisterPayload(_Payload):
    students: List[RegisterStudentPayload]
    class_id: Optional[str] = Field(default=None, alias="classId")


class ExpirePayload(_Payload):
    timeout_hours: Optional[float] = Field(default=None, alias="timeoutHours", gt=0)


@dataclass
class ApiServices:
    """Components the HTTP endpoints delegate to."""
    quiz_controller: QuizController
    recipient_manager: RecipientManager
    quiz_generator: QuizGenerator
    bot: Optional[QuizWhizBot] = None


def _recipient_dict(recipient: Recipient) -> Dict[str, Any]:
    return {
        "id": recipient.id,
        "name": recipient.name,
        "phone": recipient.phone,
        "role": recipient.role.value,
        "classId": recipient.cohort_id,
        "telegramRegistered": recipient.has_channel,
        "isActive": recipient.is_active,
    }


def _report_response(report: DispatchReport) -> Dict[str, Any]:
    return {
        "success": True,
        "message": f"Quiz sent to {report.success_count} students",
        **report.to_dict(),
    }


def create_app(services: ApiServices) -> FastAPI:
    """Create a FastAPI application wired to the provided services."""
    app = FastAPI(title="Quiz Whiz API", version="1.0.0")
    controller = services.quiz_controller
    recipients = services.recipient_manager
    generator = services.quiz_generator

    @app.exception_handler(QuizWhizError)
    async def handle_quiz_error(request: Request, exc: QuizWhizError) -> JSONResponse:
        status = status_for_error(exc)
        if status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        content: Dict[str, Any] = {"success": False, "error": str(exc)}
        if isinstance(exc, InvalidQuizContent) and exc.issues:
            content["issues"] = exc.issues
        return JSONResponse(status_code=status, content=content)

    @app.exception_handler(ValueError)
    async def handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"success": False, "error": str(exc)})

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "success": True,
            "status": "ok",
            "bot": services.bot.status() if services.bot else {"running": False, "initialized": False},
        }

    # Quiz distribution

    @app.post("/api/tools/quiz/send-to-class")
    async def send_to_class(payload: SendToClassPayload) -> Dict[str, Any]:
        report = await controller.dispatch_to_class(payload.quiz_id, payload.class_id, payload.teacher_id)
        return _report_response(report)

    @app.post("/api/tools/quiz/send-to-students")
    async def send_to_students(payload: SendToStudentsPayload) -> Dict[str, Any]:
        report = await controller.dispatch_to_students(payload.quiz_id, payload.student_ids, payload.teacher_id)
        return _report_response(report)

    @app.post("/api/tools/quiz/{quiz_id}/close")
    async def close_quiz(quiz_id: str) -> Dict[str, Any]:
        quiz = await controller.close_quiz(quiz_id)
        return {"success": True, "quizId": quiz.id, "status": quiz.status.value}

    # Authoring

    @app.post("/api/tools/quiz/generate")
    def generate_quiz(payload: GenerateQuizPayload) -> Dict[str, Any]:
        quiz = generator.generate_quiz(
            payload.chunk_id, payload.class_level, payload.subject, payload.class_id, payload.teacher_id
        )
        return {
            "success": True,
            "quizId": quiz.id,
            "questionsCount": quiz.total_questions,
            "questions": [asdict(question) for question in quiz.questions],
        }

    @app.post("/api/tools/pdf/upload")
    def upload_pdf(payload: PdfUploadPayload) -> Dict[str, Any]:
        result = generator.process_document(payload.file_path, payload.textbook_id)
        return {"success": True, **result}

    # Students

    @app.post("/api/tools/student/register")
    def register_student(payload: RegisterStudentPayload) -> Dict[str, Any]:
        recipient = recipients.register_recipient(payload.name, payload.phone, payload.role, payload.class_id)
        return {"success": True, "student": _recipient_dict(recipient)}

    @app.post("/api/tools/student/bulk-register")
    def bulk_register(payload: BulkRegisterPayload) -> Dict[str, Any]:
        entries = [
            {"name": s.name, "phone": s.phone, "role": s.role.value, "cohort_id": s.class_id or payload.class_id}
            for s in payload.students
        ]
        result = recipients.bulk_register(entries, payload.class_id)
        return {
            "success": True,
            "registeredCount": len(result["registered"]),
            "students": [_recipient_dict(r) for r in result["registered"]],
            "errors": result["errors"],
        }

    @app.get("/api/tools/student/class/{class_id}")
    def list_class(class_id: str) -> Dict[str, Any]:
        members = recipients.list_cohort(class_id)
        return {
            "success": True,
            "classId": class_id,
            "students": [_recipient_dict(r) for r in members],
            "unregisteredCount": sum(1 for r in members if not r.has_channel),
        }

    # Bot lifecycle

    @app.post("/api/tools/bot/start")
    async def start_bot() -> JSONResponse:
        if services.bot is None:
            return JSONResponse(status_code=400, content={"success": False, "error": "Telegram bot is not configured"})
        await services.bot.start()
        return JSONResponse(content={"success": True, **services.bot.status()})

    @app.post("/api/tools/bot/stop")
    async def stop_bot() -> Dict[str, Any]:
        if services.bot is not None:
            await services.bot.stop()
        return {"success": True, "running": False}

    @app.get("/api/tools/bot/status")
    def bot_status() -> Dict[str, Any]:
        status = services.bot.status() if services.bot else {"running": False, "initialized": False}
        return {"success": True, **status}

    # Analytics

    @app.get("/api/tools/analytics/student/{student_id}")
    async def student_analytics(student_id: str, subject: Optional[str] = None) -> Dict[str, Any]:
        await asyncio.to_thread(recipients.get_recipient, student_id)
        performance = await controller.get_recipient_performance(student_id, subject)
        return {"success": True, "performance": performance}

    @app.get("/api/tools/analytics/class/{class_id}")
    async def class_analytics(class_id: str, subject: Optional[str] = None) -> Dict[str, Any]:
        overview = await controller.get_cohort_overview(class_id, subject)
        return {"success": True, "overview": overview}

    # Maintenance

    @app.post("/api/tools/sessions/expire")
    async def expire_sessions(payload: Optional[ExpirePayload] = None) -> Dict[str, Any]:
        timeout = None
        if payload is not None and payload.timeout_hours is not None:
            timeout = timedelta(hours=payload.timeout_hours)
        expired = await controller.expire_stale(timeout=timeout)
        return {"success": True, "expiredCount": len(expired), "sessionIds": expired}

    return app


def build_api_server(app: FastAPI, host: str, port: int) -> uvicorn.Server:
    """Create a uvicorn server for ``app``; await ``serve()`` on the bot's event loop."""
    config = uvicorn.Config(app=app, host=host, port=port, log_level="info")
    return uvicorn.Server(config)
