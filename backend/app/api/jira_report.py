"""Workstream report API endpoints."""

import logging
import threading

from flask import Blueprint, Response, current_app, jsonify, request

from app import get_report_caches
from services.errors import DataSourceError, NotFoundError, ReportError
from services.jira_client import JiraIssueDataSource
from services.jira_report import JiraReportService
from services.progress import Error, QueueProgressSink, complete_with, format_sse

logger = logging.getLogger(__name__)

bp = Blueprint("jira_report", __name__, url_prefix="/api/jiraReport")


def get_jira_credentials():
    """Extract Jira credentials from request headers."""
    server = request.headers.get("X-Jira-Server", "").rstrip("/")
    email = request.headers.get("X-Jira-Email")
    token = request.headers.get("X-Jira-Token")

    if not all([server, email, token]):
        return None, None, None

    return server, email, token


def build_service(server, email, token):
    """Create a report service bound to the caches for these credentials."""
    app = current_app._get_current_object()
    config = app.config["REPORT_CONFIG"]
    data_source = JiraIssueDataSource(server, email, token,
                                      account_field=config["accountField"])
    return JiraReportService(data_source, get_report_caches(app, server, email, token), config)


def error_response(error):
    """Map a service error to a JSON error response."""
    if isinstance(error, NotFoundError):
        return jsonify({"error": str(error)}), 404
    if isinstance(error, DataSourceError):
        return jsonify({"error": str(error)}), 502
    return jsonify({"error": str(error)}), 500


def stream_progress(operation, complete_message):
    """Run ``operation(sink)`` on a worker thread and stream its events.

    The worker is not tied to the request: if the client goes away the
    operation still finishes and its results land in the caches.
    """
    sink = QueueProgressSink()

    def worker():
        try:
            payload = operation(sink)
        except NotFoundError as e:
            logger.warning(str(e))
            sink.emit(Error(message=str(e)))
        except ReportError as e:
            logger.error(f"Report operation failed: {e}")
            sink.emit(Error(message=str(e)))
        except Exception as e:
            logger.exception("Unexpected error in report operation")
            sink.emit(Error(message=f"Unexpected error: {e}"))
        else:
            sink.emit(complete_with(complete_message, payload))

    threading.Thread(target=worker, daemon=True).start()

    def generate():
        for event in sink.events():
            yield format_sse(event)

    return Response(
        generate(),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
    )


@bp.route("/projects", methods=["GET"])
def list_projects():
    """List all Jira projects (cached)."""
    server, email, token = get_jira_credentials()

    if not server:
        return jsonify({"error": "Missing Jira credentials in headers"}), 401

    try:
        service = build_service(server, email, token)
        projects = service.get_projects()
        return jsonify({"data": [project.to_dict() for project in projects]})
    except Exception as e:
        return error_response(e)


@bp.route("/project/<project_key>/workstreams", methods=["GET"])
def list_workstreams(project_key):
    """List the top-level workstreams of a project, without descendants."""
    server, email, token = get_jira_credentials()

    if not server:
        return jsonify({"error": "Missing Jira credentials in headers"}), 401

    try:
        service = build_service(server, email, token)
        workstreams = service.get_project_workstreams(project_key)
        return jsonify({"data": [workstream.to_dict() for workstream in workstreams]})
    except Exception as e:
        return error_response(e)


@bp.route("/project/<project_key>/account-mismatches", methods=["GET"])
def list_account_mismatches(project_key):
    """Issues whose account differs from their workstream's account.

    Only workstreams whose trees were already loaded are checked in depth.
    """
    server, email, token = get_jira_credentials()

    if not server:
        return jsonify({"error": "Missing Jira credentials in headers"}), 401

    try:
        service = build_service(server, email, token)
        mismatches = service.find_account_mismatches(project_key)
        return jsonify({"data": [mismatch.to_dict() for mismatch in mismatches]})
    except Exception as e:
        return error_response(e)


@bp.route("/project/<project_key>/request-all", methods=["GET"])
def request_all(project_key):
    """Stream progress while loading every workstream of a project.

    Query params:
        - timeout: Optional per-workstream timeout in seconds
    """
    server, email, token = get_jira_credentials()

    if not server:
        return jsonify({"error": "Missing Jira credentials in headers"}), 401

    timeout = request.args.get("timeout", type=float)
    service = build_service(server, email, token)

    return stream_progress(
        lambda sink: service.request_all_workstreams(project_key, sink, timeout),
        f"Loaded workstreams for {project_key}"
    )


@bp.route("/workstream/<workstream_key>/workstream", methods=["GET"])
def get_workstream(workstream_key):
    """Stream progress while building a workstream tree.

    The final ``complete`` event carries the tree with aggregated values.

    Query params:
        - refresh: "true" to ignore any cached tree
    """
    server, email, token = get_jira_credentials()

    if not server:
        return jsonify({"error": "Missing Jira credentials in headers"}), 401

    refresh = request.args.get("refresh", "").lower() == "true"
    service = build_service(server, email, token)

    return stream_progress(
        lambda sink: service.get_workstream_tree(workstream_key, sink, refresh).to_dict(),
        f"Workstream {workstream_key} loaded"
    )


@bp.route("/workstream/<workstream_key>/orphan-detector", methods=["GET"])
def detect_orphans(workstream_key):
    """Stream progress while reconstructing linked-issue parent chains."""
    server, email, token = get_jira_credentials()

    if not server:
        return jsonify({"error": "Missing Jira credentials in headers"}), 401

    service = build_service(server, email, token)

    def run(sink):
        report = service.detect_orphans(workstream_key, sink)
        return service.orphan_summary(report)

    return stream_progress(run, f"Orphan detection complete for {workstream_key}")


@bp.route("/cache", methods=["DELETE"])
def clear_cache():
    """Clear every cache for the caller's Jira server."""
    server, email, token = get_jira_credentials()

    if not server:
        return jsonify({"error": "Missing Jira credentials in headers"}), 401

    build_service(server, email, token).clear_cache()
    return jsonify({"data": {"cleared": True}})


@bp.route("/cache/stats", methods=["GET"])
def cache_stats():
    """Entry counts, hit rates and age of each cache."""
    server, email, token = get_jira_credentials()

    if not server:
        return jsonify({"error": "Missing Jira credentials in headers"}), 401

    return jsonify({"data": build_service(server, email, token).cache_stats()})
