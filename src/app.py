from flask import Flask, request, jsonify, send_file
import logging
import os
import tempfile
from io import BytesIO
from datetime import datetime
from services.azure_devops_service import AzureDevOpsService, AzureDevOpsAuthenticationError, AzureDevOpsApiError
from services.config_service import load_settings
from services.cost_rollup_service import CostRollupService
from services.projection_service import ProjectionService
from services.report_service import build_plan_workbook, plan_to_json, projection_to_json
from services.rollup_service import RollupError
from services.logging_service import setup_logging
from flasgger import Swagger

# Configure logging
logger = setup_logging(log_level=logging.INFO)

settings = load_settings()

# Initialize Flask app
app = Flask(__name__)

swagger_config = {
    "headers": [],
    "specs": [
        {
            "endpoint": 'apispec',
            "route": '/ado-rollup/apispec.json',
            "rule_filter": lambda rule: True,
            "model_filter": lambda tag: True,
        }
    ],
    "static_url_path": "/ado-rollup/flasgger_static",
    "swagger_ui": True,
    "specs_route": "/ado-rollup/docs"
}

swagger_template = {
    "info": {
        "title": "Azure DevOps Cost Rollup API",
        "description": "API for rolling up cost fields through Azure DevOps work item hierarchies",
        "version": "1.0",
        "contact": {
            "name": "API Support"
        }
    }
}

swagger = Swagger(app, config=swagger_config, template=swagger_template)


class RequestValidationError(Exception):
    pass


@app.route('/health', methods=['GET'])
@app.route('/ado-rollup/health', methods=['GET'])
def health_check():
    """
    Health check endpoint
    ---
    responses:
      200:
        description: Service is healthy
    """
    return jsonify({"status": "healthy"}), 200


@app.route('/ado-rollup/rollup', methods=['POST'])
def rollup_api():
    """
    Roll up cost fields through the work item hierarchy
    ---
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          required:
            - AZURE_PAT
            - ORGANIZATION
            - PROJECT
          properties:
            AZURE_PAT:
              type: string
              description: Azure DevOps Personal Access Token
            ORGANIZATION:
              type: string
              description: Azure DevOps Organization name
            PROJECT:
              type: string
              description: Azure DevOps Project name
            AREA_PATHS:
              type: array
              description: Area paths to roll up. Required unless QUERY_ID is given.
              items:
                type: string
            ITERATION_PATH:
              type: string
              description: Optional iteration path the top level Features must be in
            QUERY_ID:
              type: string
              description: Optional saved tree query to use instead of the area path query
            QUERY_EXTENSION:
              type: string
              description: Optional WIQL condition ANDed onto the generated query
            APPLY:
              type: boolean
              description: Persist the computed costs. Defaults to false (safe mode).
              default: false
            FORCE_CAP:
              type: integer
              description: Update at most this many work items in this run
            VERBOSE:
              type: boolean
              description: Also list items that need no update
              default: false
    responses:
      200:
        description: Rollup computed (and applied when APPLY is true)
      400:
        description: Bad request - missing or invalid parameters
      401:
        description: Invalid Azure DevOps PAT token
      502:
        description: Some update batches failed; the computed plan is returned
      500:
        description: Internal server error
    """
    try:
        data = request.get_json(silent=True) or {}
        logger.info("Received rollup request")

        params = _parse_rollup_parameters(data)
        apply = _parse_flag(data, 'APPLY')
        verbose = _parse_flag(data, 'VERBOSE')

        rollup_service = CostRollupService(_azure_devops_from(data), settings)
        outcome = rollup_service.run(
            area_paths=params["area_paths"],
            iteration_path=params["iteration_path"],
            query_extension=params["query_extension"],
            query_id=params["query_id"],
            apply=apply,
            force_cap=params["force_cap"]
        )

        response_data = {
            "message": "Rollup computed in safe mode, nothing was written." if outcome.safe_mode
            else "Rollup applied.",
            "safe_mode": outcome.safe_mode,
            "updates_required": len(outcome.plan.updates_required()),
            "updated_count": outcome.updated_count,
            "plan": plan_to_json(outcome.plan, verbose)
        }

        if outcome.write_error is not None:
            response_data["message"] = "Some update batches failed. Rerun to reconcile remaining items."
            response_data["error"] = str(outcome.write_error)
            return jsonify(response_data), 502

        return jsonify(response_data), 200

    except Exception as e:
        return _error_response(e, "Error computing rollup")


@app.route('/ado-rollup/rollup-plan', methods=['POST'])
def rollup_plan_api():
    """
    Download the rollup update plan as an Excel workbook (never writes)
    ---
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          required:
            - AZURE_PAT
            - ORGANIZATION
            - PROJECT
          properties:
            AZURE_PAT:
              type: string
            ORGANIZATION:
              type: string
            PROJECT:
              type: string
            AREA_PATHS:
              type: array
              items:
                type: string
            ITERATION_PATH:
              type: string
            QUERY_ID:
              type: string
            QUERY_EXTENSION:
              type: string
            VERBOSE:
              type: boolean
              default: false
            output_file_name:
              type: string
              description: Optional custom filename for the workbook (without extension)
    responses:
      200:
        description: Excel workbook with the update plan
      400:
        description: Bad request - missing or invalid parameters
      401:
        description: Invalid Azure DevOps PAT token
      500:
        description: Internal server error
    """
    try:
        data = request.get_json(silent=True) or {}
        logger.info("Received rollup plan request")

        params = _parse_rollup_parameters(data)
        verbose = _parse_flag(data, 'VERBOSE')
        rollup_service = CostRollupService(_azure_devops_from(data), settings)
        plan = rollup_service.load_hierarchy(
            area_paths=params["area_paths"],
            iteration_path=params["iteration_path"],
            query_extension=params["query_extension"],
            query_id=params["query_id"]
        )

        output_file_name = data.get('output_file_name')
        if output_file_name:
            # Ensure the filename is safe by removing any problematic characters
            safe_filename = ''.join(c for c in output_file_name if c.isalnum() or c in ['-', '_', '.'])
            file_name = f"{safe_filename}.xlsx"
        else:
            file_name = f"rollup_plan_{datetime.now().strftime('%Y%m%d_%H%M%S')}.xlsx"

        with tempfile.NamedTemporaryFile(suffix='.xlsx', delete=False) as temp_file:
            temp_file_path = temp_file.name

        try:
            build_plan_workbook(plan, temp_file_path, verbose=verbose)
            with open(temp_file_path, 'rb') as f:
                content = f.read()
        finally:
            os.unlink(temp_file_path)

        logger.info(f"Update plan workbook generated: {file_name}")
        return send_file(
            BytesIO(content),
            mimetype='application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
            as_attachment=True,
            download_name=file_name
        )

    except Exception as e:
        return _error_response(e, "Error generating rollup plan")


@app.route('/ado-rollup/projection', methods=['POST'])
def projection_api():
    """
    Project the backlog's cumulative remaining work against capacity
    ---
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          required:
            - AZURE_PAT
            - ORGANIZATION
            - PROJECT
            - AREA_PATHS
            - ITERATION_PATH
          properties:
            AZURE_PAT:
              type: string
            ORGANIZATION:
              type: string
            PROJECT:
              type: string
            AREA_PATHS:
              type: array
              items:
                type: string
            ITERATION_PATH:
              type: string
            CAPACITY:
              type: number
              description: Capacity in days used to draw the cut line
            QUERY_EXTENSION:
              type: string
    responses:
      200:
        description: Projection rows and slicer summaries
      400:
        description: Bad request - missing or invalid parameters
      401:
        description: Invalid Azure DevOps PAT token
      500:
        description: Internal server error
    """
    try:
        data = request.get_json(silent=True) or {}
        logger.info("Received projection request")

        area_paths = data.get('AREA_PATHS') or []
        iteration_path = data.get('ITERATION_PATH')
        if not area_paths or not iteration_path:
            raise RequestValidationError("Both AREA_PATHS and ITERATION_PATH are required.")

        capacity = data.get('CAPACITY')
        if capacity is not None and (isinstance(capacity, bool) or not isinstance(capacity, (int, float))):
            raise RequestValidationError("CAPACITY must be a number.")

        projection_service = ProjectionService(_azure_devops_from(data), settings)
        result = projection_service.run(area_paths, iteration_path, capacity, data.get('QUERY_EXTENSION'))
        return jsonify(projection_to_json(result)), 200

    except Exception as e:
        return _error_response(e, "Error computing projection")


def _azure_devops_from(data: dict) -> AzureDevOpsService:
    azure_pat = data.get('AZURE_PAT')
    organization = data.get('ORGANIZATION')
    project = data.get('PROJECT')
    if not all([azure_pat, organization, project]):
        raise RequestValidationError(
            "Missing required parameters. Please provide AZURE_PAT, ORGANIZATION, and PROJECT."
        )
    return AzureDevOpsService(azure_pat, organization, project, api_version=settings.api_version)


def _parse_rollup_parameters(data: dict) -> dict:
    """
    Validate the work item selection parameters of a rollup request

    Returns:
        dict with area_paths, iteration_path, query_extension, query_id and force_cap
    """
    area_paths = data.get('AREA_PATHS') or []
    query_id = data.get('QUERY_ID')
    if not query_id and not area_paths:
        raise RequestValidationError("Either AREA_PATHS or QUERY_ID is required.")
    if not isinstance(area_paths, list):
        raise RequestValidationError("AREA_PATHS must be a list of area paths.")

    force_cap = data.get('FORCE_CAP')
    if force_cap is not None:
        if isinstance(force_cap, bool) or not isinstance(force_cap, int) or force_cap < 1:
            raise RequestValidationError("FORCE_CAP must be a positive integer.")
        logger.info(f"Capping updates to max of {force_cap}.")

    return {
        "area_paths": area_paths,
        "iteration_path": data.get('ITERATION_PATH'),
        "query_extension": data.get('QUERY_EXTENSION'),
        "query_id": query_id,
        "force_cap": force_cap
    }


def _parse_flag(data: dict, name: str) -> bool:
    value = data.get(name, False)
    if not isinstance(value, bool):
        raise RequestValidationError(f"{name} must be a boolean.")
    return value


def _error_response(error: Exception, context: str):
    if isinstance(error, RequestValidationError):
        logger.error(f"Validation error: {str(error)}")
        return jsonify({"error": str(error)}), 400
    if isinstance(error, AzureDevOpsAuthenticationError):
        logger.error("Authentication failed with Azure DevOps")
        return jsonify({
            "error": "Invalid Azure DevOps PAT token. Please check your credentials.",
            "status": "unauthorized"
        }), 401

    logger.exception(context)
    if isinstance(error, AzureDevOpsApiError):
        return jsonify({
            "error": "Azure DevOps request failed. Please check the parameters and try again.",
            "detail": str(error),
            "status": "error"
        }), 500
    if isinstance(error, (RollupError, ValueError)):
        return jsonify({"error": str(error), "status": "error"}), 500

    return jsonify({
        "error": "An error occurred while processing the request. Please try again.",
        "status": "error"
    }), 500


if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    app.run(host='0.0.0.0', port=port, debug=False)
