"""Main Quart application for the Personal Librarian."""
import logging
from pathlib import Path
from typing import Optional

from pydantic import ValidationError
from quart import Blueprint, Quart, current_app, g, jsonify, request
import structlog

from librarian import config, db
from librarian.errors import DocumentBusyError, PersistenceError
from librarian.schemas import ChatRequest, InsightRequest, ReportUpdate, SessionCreate
from librarian.services import Services, build_services

logger = structlog.get_logger()

OWNER_HEADER = "X-Owner-Id"

# Browsers often send markdown as octet-stream
EXTENSION_MIME_TYPES = {
    ".pdf": "application/pdf",
    ".txt": "text/plain",
    ".md": "text/markdown",
    ".markdown": "text/markdown",
}

api = Blueprint("api", __name__, url_prefix="/api")


def configure_logging(level: str = None) -> None:
    """Configure structured JSON logging."""
    level = (level or config.LOG_LEVEL).upper()
    logging.basicConfig(format="%(message)s", level=getattr(logging, level, logging.INFO))

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _services() -> Services:
    return current_app.extensions["librarian"]


def _validation_message(error: ValidationError) -> str:
    first = error.errors()[0]
    return first.get("msg", "Invalid request").removeprefix("Value error, ")


def _resolve_mime_type(filename: str, declared: Optional[str]) -> Optional[str]:
    if declared in config.ALLOWED_MIME_TYPES:
        return declared
    return EXTENSION_MIME_TYPES.get(Path(filename or "").suffix.lower())


@api.before_request
async def require_owner():
    owner_id = request.headers.get(OWNER_HEADER, "").strip()
    if not owner_id:
        return jsonify({"error": f"Missing {OWNER_HEADER} header"}), 400
    if len(owner_id) > 128:
        return jsonify({"error": f"Invalid {OWNER_HEADER} header"}), 400
    g.owner_id = owner_id


async def _process_in_background(document_id: str) -> None:
    try:
        await _services().ingest.ingest_document(document_id)
    except Exception as e:
        # Status is already 'failed'; the document can be re-processed
        logger.error("background_processing_failed", document_id=document_id, error=str(e))


# Documents


@api.route("/documents", methods=["POST"])
async def upload_document():
    """Upload a document and start processing it.

    Expects multipart form data with a 'file' field (PDF, plain text or
    markdown, at most MAX_UPLOAD_BYTES).

    Returns JSON:
    {
        "document_id": "uuid",
        "path": "owner/documents/...",
        "status": "uploaded"
    }
    """
    files = await request.files
    upload = files.get("file")
    if upload is None or not upload.filename:
        return jsonify({"error": "No file provided"}), 400

    mime_type = _resolve_mime_type(upload.filename, upload.mimetype)
    if mime_type is None:
        return jsonify({
            "error": "Unsupported file type. Allowed: " + ", ".join(config.ALLOWED_MIME_TYPES)
        }), 400

    data = upload.read()
    if len(data) > config.MAX_UPLOAD_BYTES:
        return jsonify({"error": f"File too large (max {config.MAX_UPLOAD_BYTES // (1024 * 1024)}MB)"}), 413
    if not data:
        return jsonify({"error": "File is empty"}), 400

    services = _services()
    try:
        storage_uri = services.blob_store.save(g.owner_id, upload.filename, data)
        document = db.create_document(
            g.owner_id,
            title=upload.filename,
            storage_uri=storage_uri,
            mime_type=mime_type,
        )
    except (OSError, PersistenceError) as e:
        logger.error("document_upload_failed", error=str(e), error_type=type(e).__name__)
        return jsonify({"error": "Failed to store the document. Please try again."}), 500

    current_app.add_background_task(_process_in_background, document["id"])

    logger.info("document_uploaded", document_id=document["id"], mime_type=mime_type, size=len(data))

    return jsonify({
        "document_id": document["id"],
        "path": storage_uri,
        "status": document["status"],
    }), 201


@api.route("/documents", methods=["GET"])
async def list_documents():
    try:
        return jsonify({"documents": db.list_documents(g.owner_id)})
    except PersistenceError as e:
        logger.error("documents_list_error", error=str(e))
        return jsonify({"error": "Failed to list documents"}), 500


@api.route("/documents/<document_id>", methods=["DELETE"])
async def delete_document(document_id: str):
    """Delete a document with its vectors and stored file.

    Returns:
        204 No Content if successful
        404 Not Found if document doesn't exist
        409 Conflict if the document is being processed
    """
    try:
        deleted = await _services().ingest.delete_document(g.owner_id, document_id)
    except DocumentBusyError:
        return jsonify({"error": "Document is being processed"}), 409
    except Exception as e:
        logger.error("document_delete_error", error=str(e), document_id=document_id)
        return jsonify({"error": "Failed to delete document"}), 500

    if not deleted:
        return jsonify({"error": "Document not found"}), 404
    return "", 204


@api.route("/documents/<document_id>/process", methods=["POST"])
async def process_document(document_id: str):
    """Re-run extraction, chunking and embedding for a document.

    Returns JSON with the ingestion result, 404 if the document doesn't
    exist and 409 if it is already being processed.
    """
    if db.get_document(document_id, owner_id=g.owner_id) is None:
        return jsonify({"error": "Document not found"}), 404

    try:
        result = await _services().ingest.ingest_document(document_id)
    except DocumentBusyError:
        return jsonify({"error": "Document is already being processed"}), 409
    except Exception as e:
        logger.error("document_process_error", error=str(e), document_id=document_id)
        return jsonify({
            "error": "Processing failed. Please try again later.",
            "document_id": document_id,
            "status": "failed",
        }), 500

    return jsonify({**result, "status": "embedded"})


# Chat and insights


@api.route("/chat", methods=["POST"])
async def chat():
    """Answer a message from the owner's documents.

    Expects JSON body:
    {
        "message": "user message text",
        "session_id": "optional-session-id",  // creates new if not provided
        "include_history": true  // optional, defaults to true
    }

    Returns JSON:
    {
        "response": "assistant response text",
        "session_id": "session-id",
        "sources": [...],
        "is_fallback": false,
        "report_id": "uuid or null"
    }
    """
    data = await request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({"error": "Missing 'message' in request body"}), 400

    try:
        body = ChatRequest(**data)
    except ValidationError as e:
        return jsonify({"error": _validation_message(e)}), 400

    services = _services()
    conversations = services.conversations

    session_id = body.session_id
    if session_id:
        if conversations.get_session(g.owner_id, session_id) is None:
            return jsonify({"error": "Session not found"}), 404
    else:
        session_id = conversations.create_session(g.owner_id)
        logger.info("new_session_created", session_id=session_id)

    logger.info(
        "chat_request_received",
        session_id=session_id,
        message_length=len(body.message),
        include_history=body.include_history,
        user_message_preview=body.message[:100],
    )

    try:
        history = conversations.get_history(g.owner_id, session_id)
        result = await services.pipeline.process_query(
            g.owner_id,
            body.message,
            history=history,
            include_history=body.include_history,
        )
    except Exception as e:
        logger.error("chat_endpoint_error", error=str(e), error_type=type(e).__name__)
        return jsonify({
            "error": "An error occurred processing your request. Please try again."
        }), 500

    conversations.add_turn(g.owner_id, session_id, "user", body.message)
    conversations.add_turn(g.owner_id, session_id, "assistant", result.answer)

    logger.info(
        "chat_response_sent",
        session_id=session_id,
        response_length=len(result.answer),
        is_fallback=result.is_fallback,
    )

    return jsonify({
        "response": result.answer,
        "model": config.CHAT_MODEL,
        "session_id": session_id,
        "sources": result.sources,
        "is_fallback": result.is_fallback,
        "report_id": result.report_id,
    })


@api.route("/insights", methods=["POST"])
async def generate_insight():
    data = await request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({"error": "Missing 'topic' in request body"}), 400

    try:
        body = InsightRequest(**data)
    except ValidationError as e:
        return jsonify({"error": _validation_message(e)}), 400

    try:
        result = await _services().pipeline.generate_insight(g.owner_id, body.topic)
    except Exception as e:
        logger.error("insight_endpoint_error", error=str(e), error_type=type(e).__name__)
        return jsonify({
            "error": "An error occurred generating the insight. Please try again."
        }), 500

    return jsonify(result.to_dict())


# Reports and prompt history


@api.route("/reports", methods=["GET"])
async def list_reports():
    try:
        return jsonify({"reports": db.list_reports(g.owner_id)})
    except PersistenceError as e:
        logger.error("reports_list_error", error=str(e))
        return jsonify({"error": "Failed to list reports"}), 500


@api.route("/reports/<report_id>", methods=["GET"])
async def get_report(report_id: str):
    try:
        report = db.get_report(g.owner_id, report_id)
    except PersistenceError as e:
        logger.error("report_get_error", error=str(e), report_id=report_id)
        return jsonify({"error": "Failed to get report"}), 500

    if report is None:
        return jsonify({"error": "Report not found"}), 404
    return jsonify(report)


@api.route("/reports/<report_id>", methods=["PATCH"])
async def update_report(report_id: str):
    """Overwrite a report's title, content or source list."""
    data = await request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({"error": "Invalid request body"}), 400

    try:
        body = ReportUpdate(**data)
    except ValidationError as e:
        return jsonify({"error": _validation_message(e)}), 400

    try:
        report = db.update_report(
            g.owner_id,
            report_id,
            title=body.title,
            content=body.content,
            source_urls=body.source_urls,
        )
    except PersistenceError as e:
        logger.error("report_update_error", error=str(e), report_id=report_id)
        return jsonify({"error": "Failed to update report"}), 500

    if report is None:
        return jsonify({"error": "Report not found"}), 404
    return jsonify(report)


@api.route("/reports/<report_id>", methods=["DELETE"])
async def delete_report(report_id: str):
    try:
        deleted = db.delete_report(g.owner_id, report_id)
    except PersistenceError as e:
        logger.error("report_delete_error", error=str(e), report_id=report_id)
        return jsonify({"error": "Failed to delete report"}), 500

    if not deleted:
        return jsonify({"error": "Report not found"}), 404
    return "", 204


@api.route("/prompts", methods=["GET"])
async def list_prompts():
    """List prompt history, newest first. Accepts ?limit=N (1-200, default 50)."""
    try:
        limit = int(request.args.get("limit", 50))
    except ValueError:
        return jsonify({"error": "limit must be an integer"}), 400
    limit = max(1, min(limit, 200))

    try:
        return jsonify({"prompts": db.list_prompt_history(g.owner_id, limit=limit)})
    except PersistenceError as e:
        logger.error("prompts_list_error", error=str(e))
        return jsonify({"error": "Failed to list prompt history"}), 500


# Sessions


@api.route("/sessions", methods=["POST"])
async def create_session():
    """Create a new chat session.

    Expects JSON body:
    {
        "title": "optional title"
    }
    """
    data = await request.get_json(silent=True) or {}
    try:
        body = SessionCreate(**data)
    except ValidationError as e:
        return jsonify({"error": _validation_message(e)}), 400

    conversations = _services().conversations
    session_id = conversations.create_session(g.owner_id, body.title)
    session = conversations.get_session(g.owner_id, session_id)

    return jsonify(session.to_dict()), 201


@api.route("/sessions", methods=["GET"])
async def list_sessions():
    return jsonify({"sessions": _services().conversations.list_sessions(g.owner_id)})


@api.route("/sessions/<session_id>", methods=["DELETE"])
async def delete_session(session_id: str):
    """Delete a session and all its messages.

    Returns:
        204 No Content if successful
        404 Not Found if session doesn't exist
    """
    if _services().conversations.delete_session(g.owner_id, session_id):
        return "", 204
    return jsonify({"error": "Session not found"}), 404


@api.route("/sessions/<session_id>/messages", methods=["GET"])
async def get_session_messages(session_id: str):
    conversations = _services().conversations
    if conversations.get_session(g.owner_id, session_id) is None:
        return jsonify({"error": "Session not found"}), 404

    turns = conversations.get_all_turns(g.owner_id, session_id)
    return jsonify({"messages": [turn.to_dict() for turn in turns]})


# Index


@api.route("/index/stats", methods=["GET"])
async def index_stats():
    services = _services()
    stats = services.vector_store.get_owner_stats(g.owner_id)
    try:
        documents = db.list_documents(g.owner_id)
    except PersistenceError as e:
        logger.error("index_stats_error", error=str(e))
        return jsonify({"error": "Failed to get index statistics"}), 500

    stats["document_count"] = len(documents)
    stats["embedded_documents"] = sum(1 for d in documents if d["status"] == "embedded")
    stats["embedding_model"] = services.vector_store.embedding_model
    stats["pending_memory_writes"] = services.memory_writer.pending_count
    return jsonify(stats)


def create_app(services: Optional[Services] = None) -> Quart:
    """Build the Quart application.

    Args:
        services: Pre-built services (default: built from config)
    """
    app = Quart(__name__)
    app.config["MAX_CONTENT_LENGTH"] = config.MAX_UPLOAD_BYTES + 64 * 1024
    app.extensions["librarian"] = services or build_services()
    app.register_blueprint(api)

    @app.before_serving
    async def startup():
        db.init_database()
        app.extensions["librarian"].vector_store.init_or_load()
        logger.info("app_started", chat_model=config.CHAT_MODEL)

    @app.after_serving
    async def shutdown():
        services = app.extensions["librarian"]
        await services.memory_writer.drain()
        await services.vector_store.flush()
        logger.info("app_stopped")

    @app.route("/health/ready")
    async def health_ready():
        """Readiness probe - check if app can serve requests.

        Checks:
        - Ollama service is reachable
        - Required models are available
        """
        checks = {
            "status": "healthy",
            "ollama": False,
            "models": False,
        }

        try:
            models = await app.extensions["librarian"].client.list_models()
            checks["ollama"] = True

            missing = [
                name for name in (config.CHAT_MODEL, config.EMBEDDING_MODEL)
                if name not in models
            ]
            if missing:
                checks["status"] = "unhealthy"
                checks["error"] = "Missing models: " + ", ".join(missing)
            else:
                checks["models"] = True

            status_code = 200 if checks["status"] == "healthy" else 503
            return jsonify(checks), status_code

        except Exception as e:
            logger.error("health_check_failed", error=str(e))
            checks["status"] = "unhealthy"
            checks["error"] = "Ollama is not reachable"
            return jsonify(checks), 503

    @app.route("/health/live")
    async def health_live():
        """Liveness probe - check if app is running."""
        return jsonify({"status": "alive"}), 200

    @app.errorhandler(404)
    async def not_found(error):
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(405)
    async def method_not_allowed(error):
        return jsonify({"error": "Method not allowed"}), 405

    @app.errorhandler(413)
    async def too_large(error):
        return jsonify({"error": f"File too large (max {config.MAX_UPLOAD_BYTES // (1024 * 1024)}MB)"}), 413

    @app.errorhandler(500)
    async def internal_error(error):
        logger.error("internal_server_error", error=str(error))
        return jsonify({"error": "Internal server error"}), 500

    return app


configure_logging()
app = create_app()


if __name__ == "__main__":
    # For development - serve with hypercorn in production
    app.run(host="0.0.0.0", port=5000, debug=True)
