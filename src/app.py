from flask import Blueprint, Flask, current_app, request, jsonify, send_file
import io
import logging
import os
import sys
import tempfile
from datetime import datetime
from typing import Optional
from services.azure_devops_service import (
    AzureDevOpsAuthenticationError,
    AzureDevOpsError,
    AzureDevOpsService,
)
from services.config_service import ConfigurationError, Settings, load_settings
from services.logging_service import setup_logging
from services.models import EpicFailure
from services.report_service import EpicReportPipeline, ReportService, report_rows_to_dict
from flasgger import Swagger

logger = logging.getLogger(__name__)

XLSX_MIMETYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

swagger_config = {
    "headers": [],
    "specs": [
        {
            "endpoint": 'apispec',
            "route": '/epic-report/apispec.json',
            "rule_filter": lambda rule: True,
            "model_filter": lambda tag: True,
        }
    ],
    "static_url_path": "/epic-report/flasgger_static",
    "swagger_ui": True,
    "specs_route": "/epic-report/docs"
}

swagger_template = {
    "info": {
        "title": "Azure DevOps Epic Effort Report API",
        "description": "Compare the Effort of each Epic in an iteration with the story points of its children",
        "version": "1.0",
        "contact": {
            "name": "API Support"
        }
    }
}

bp = Blueprint("epic_report", __name__)


def _service() -> AzureDevOpsService:
    return current_app.extensions["azure_devops"]


def _settings() -> Settings:
    return current_app.config["SETTINGS"]


def _http_error_status(error: AzureDevOpsError) -> int:
    return 401 if isinstance(error, AzureDevOpsAuthenticationError) else 502


@bp.route('/health', methods=['GET'])
@bp.route('/epic-report/health', methods=['GET'])
def health_check():
    """
    Health check endpoint
    ---
    responses:
      200:
        description: Service is healthy
    """
    return jsonify({"status": "healthy", "organization": _settings().organization}), 200


@bp.route('/epic-report/projects', methods=['GET'])
def list_projects():
    """
    List the projects visible to the configured PAT
    ---
    responses:
      200:
        description: Project names in ascending order
        schema:
          type: object
          properties:
            projects:
              type: array
              items:
                type: string
      401:
        description: The PAT was rejected
      502:
        description: Azure DevOps returned an error
    """
    try:
        projects = _service().list_projects()
    except AzureDevOpsError as e:
        logger.error(f"Error fetching projects: {str(e)}")
        return jsonify({"error": f"Error fetching projects: {str(e)}", "projects": []}), _http_error_status(e)

    return jsonify({"projects": projects}), 200


@bp.route('/epic-report/projects/<path:project>/iterations', methods=['GET'])
def list_iterations(project):
    """
    List the top-level iterations of a project
    ---
    parameters:
      - in: path
        name: project
        type: string
        required: true
        description: Project name
    responses:
      200:
        description: Collapsed iteration paths in first-seen order
        schema:
          type: object
          properties:
            iterations:
              type: array
              items:
                type: string
      401:
        description: The PAT was rejected
      502:
        description: Azure DevOps returned an error
    """
    try:
        iterations = _service().list_iterations(project)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except AzureDevOpsError as e:
        logger.error(f"Error fetching iterations for {project}: {str(e)}")
        return jsonify({"error": f"Error fetching iterations: {str(e)}", "iterations": []}), _http_error_status(e)

    return jsonify({"project": project, "iterations": iterations}), 200


@bp.route('/epic-report/report', methods=['POST'])
def generate_report_api():
    """
    Build the Epic effort report for a project and iteration
    ---
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          required:
            - project
            - iteration
          properties:
            project:
              type: string
              description: Project name
            iteration:
              type: string
              description: Iteration path as returned by the iterations endpoint
            format:
              type: string
              description: "json (default) or xlsx"
    responses:
      200:
        description: Report rows, per-Epic errors and an informational message
      400:
        description: Malformed body, or missing project or iteration
      401:
        description: The PAT was rejected
      502:
        description: The Epic query failed
    """
    data = request.get_json(silent=True)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        return jsonify({"error": "Request body must be a JSON object."}), 400

    project = data.get('project') or ""
    iteration = data.get('iteration') or ""
    output_format = data.get('format') or "json"
    if not all(isinstance(value, str) for value in (project, iteration, output_format)):
        return jsonify({"error": "project, iteration and format must be strings."}), 400

    project = project.strip()
    iteration = iteration.strip()
    output_format = output_format.lower()

    if not project or not iteration:
        return jsonify({"error": "Please select a product and iteration."}), 400

    if output_format not in ("json", "xlsx"):
        return jsonify({"error": "format must be 'json' or 'xlsx'."}), 400

    errors = []

    def record_failure(failure: EpicFailure) -> None:
        errors.append({"epic_id": failure.epic_id, "error": failure.message})

    pipeline = EpicReportPipeline(_service(), max_workers=_settings().max_workers)
    try:
        report = pipeline.run(project, iteration, on_error=record_failure)
    except AzureDevOpsError as e:
        logger.error(f"Error fetching Epics: {str(e)}")
        return jsonify({"error": f"Error fetching Epics: {str(e)}"}), _http_error_status(e)

    if output_format == "xlsx":
        return _send_workbook(report.rows)

    return jsonify({
        "project": project,
        "iteration": iteration,
        "rows": report_rows_to_dict(report.rows),
        "errors": errors,
        "message": report.message,
    }), 200


def _send_workbook(rows):
    with tempfile.NamedTemporaryFile(suffix='.xlsx', delete=False) as temp_file:
        temp_file_path = temp_file.name

    try:
        ReportService().build_excel_workbook(rows, temp_file_path)
        with open(temp_file_path, "rb") as f:
            content = io.BytesIO(f.read())
    finally:
        os.unlink(temp_file_path)

    file_name = f"epic_effort_report_{datetime.now().strftime('%Y%m%d_%H%M%S')}.xlsx"
    return send_file(content, mimetype=XLSX_MIMETYPE, as_attachment=True, download_name=file_name)


def create_app(settings: Optional[Settings] = None,
               service: Optional[AzureDevOpsService] = None) -> Flask:
    """
    Create and configure the Flask application

    Raises:
        ConfigurationError: If settings are not given and cannot be loaded
    """
    if settings is None:
        settings = load_settings()

    app = Flask(__name__)
    app.config["SETTINGS"] = settings
    app.extensions["azure_devops"] = service or AzureDevOpsService.from_settings(settings)

    Swagger(app, config=swagger_config, template=swagger_template)
    app.register_blueprint(bp)

    return app


def main():
    try:
        settings = load_settings()
    except ConfigurationError as e:
        setup_logging()
        logger.error(f"Configuration error: {str(e)}")
        sys.exit(1)

    setup_logging(settings.log_level, settings.log_dir)

    app = create_app(settings)

    # Startup check only; the service stays up with an empty project list on failure
    try:
        projects = app.extensions["azure_devops"].list_projects()
        logger.info(f"Projects available in {settings.organization}: {', '.join(projects)}")
    except AzureDevOpsError as e:
        logger.error(f"Error fetching projects: {str(e)}")

    port = int(os.environ.get('PORT', 5000))
    app.run(host='0.0.0.0', port=port, debug=False)


if __name__ == '__main__':
    main()
