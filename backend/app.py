from flask import Flask, request, jsonify
from flask_cors import CORS
import os
import logging

from backend.flowgraph.config import Config, check_threshold
from backend.flowgraph.document import validate_pdf
from backend.flowgraph.errors import DocumentError, ErrorCode, Stage, StorageError
from backend.flowgraph.formatter import (
    format_error_response,
    format_response,
    format_stored_run,
)
from backend.flowgraph.interfaces import diagram_key, input_key
from backend.flowgraph.pipeline import DiagramPipeline, PipelineOptions
from backend.flowgraph.schema import RunStatus


def setup_logging(config: Config):
    logging.basicConfig(
        filename=config.log_file,
        level=logging.DEBUG,
        format='%(asctime)s %(levelname)s: %(message)s'
    )


def _not_configured():
    return jsonify(format_error_response({
        "code": ErrorCode.UNKNOWN_ERROR.value,
        "message": "Supabase is not configured. Please set SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY.",
        "stage": Stage.PARSING.value,
    })), 500


def create_app(pipeline=None, records=None, blobs=None, config=None):
    """
    Flask factory. Collaborators are built from the environment unless given;
    tests hand in fakes.
    """
    config = config or Config.from_env()
    app = Flask(__name__)
    app.config['MAX_CONTENT_LENGTH'] = config.max_upload_mb * 1024 * 1024
    CORS(app, resources={r"/*": {"origins": os.environ.get('CORS_ORIGINS', '*').split(',')}})

    if pipeline is None and config.supabase_configured:
        pipeline = DiagramPipeline.from_config(config)
    if pipeline is not None:
        records = records or pipeline.records
        blobs = blobs or pipeline.blobs

    @app.route('/health', methods=['GET'])
    def health():
        return jsonify({"status": "ok", "supabase": config.supabase_configured})

    def read_upload():
        """Returns (filename, data) or an error response."""
        if 'file' not in request.files:
            return None, (jsonify({"success": False, "error": "No file part"}), 400)
        file = request.files['file']
        if file.filename == '':
            return None, (jsonify({"success": False, "error": "No selected file"}), 400)

        file_ext = file.filename.rsplit('.', 1)[-1].lower() if '.' in file.filename else ''
        if file_ext not in config.allowed_extensions:
            return None, (jsonify({"success": False, "error": "Only PDF files are supported"}), 400)

        data = file.read()
        size_mb = len(data) / (1024 * 1024)
        if size_mb > config.max_upload_mb:
            return None, (jsonify({
                "success": False,
                "error": f"File too large ({size_mb:.1f}MB). Max is {config.max_upload_mb}MB."
            }), 400)
        return (file.filename.replace(' ', '_'), data), None

    @app.route('/upload', methods=['POST'])
    async def upload():
        if records is None:
            return _not_configured()

        received, error = read_upload()
        if error:
            return error
        filename, data = received

        try:
            validate_pdf(data)
        except DocumentError as e:
            return jsonify({"success": False, "error": str(e)}), 400

        run = await records.create_run(filename, RunStatus.PENDING)
        storage_path = await blobs.put_object(data, input_key(run.id, filename), config.pdf_bucket,
                                              "application/pdf")
        logging.info(f"Uploaded {filename} ({len(data)} bytes) as pending run {run.id}")
        return jsonify({
            "success": True,
            "runId": run.id,
            "filename": filename,
            "size": len(data),
            "storagePath": storage_path,
            "message": "File uploaded successfully"
        })

    @app.route('/process', methods=['POST'])
    async def process():
        if pipeline is None:
            return _not_configured()

        received, error = read_upload()
        if error:
            return error
        filename, data = received

        try:
            options = PipelineOptions(
                filename=filename,
                max_retries=_optional(request.form.get('max_retries'), _non_negative_int),
                accuracy_threshold=_optional(request.form.get('accuracy_threshold'), _fraction),
            )
        except ValueError as e:
            return jsonify({"success": False, "error": str(e)}), 400

        logging.info(f"Processing {filename} ({len(data)} bytes)")
        result = await pipeline.run(data, options)
        return jsonify(format_response(result))

    @app.route('/process/<run_id>', methods=['POST'])
    async def process_uploaded(run_id):
        if pipeline is None:
            return _not_configured()

        run = await records.get_run(run_id)
        if run is None:
            return jsonify({"success": False, "error": "Run not found"}), 404
        if run.status != RunStatus.PENDING:
            return jsonify({
                "success": False,
                "error": f"Run is already {run.status.value}"
            }), 409

        body = request.get_json(silent=True) or {}
        raw_options = body.get('options') or {}
        try:
            options = PipelineOptions(
                filename=run.filename,
                max_retries=_optional(raw_options.get('maxRetries'), _non_negative_int),
                accuracy_threshold=_optional(raw_options.get('accuracyThreshold'), _fraction),
                run_id=run_id,
            )
        except (TypeError, ValueError) as e:
            return jsonify({"success": False, "error": str(e)}), 400

        data = await blobs.get_object(input_key(run_id, run.filename), config.pdf_bucket)
        logging.info(f"Processing uploaded run {run_id} ({len(data)} bytes)")
        result = await pipeline.run(data, options)
        return jsonify(format_response(result))

    @app.route('/results/<run_id>', methods=['GET'])
    async def get_results(run_id):
        if records is None:
            return _not_configured()

        run = await records.get_run(run_id)
        if run is None:
            return jsonify(format_error_response({
                "code": ErrorCode.UNKNOWN_ERROR.value,
                "message": "Run not found",
                "stage": Stage.PARSING.value,
            }, run_id=run_id)), 404

        flows = await records.get_flows(run_id)
        report = await records.get_verification(run_id)
        urls = {
            "diagram": await _signed_url(blobs, diagram_key(run_id), config.diagram_bucket),
            "pdf": await _signed_url(blobs, input_key(run_id, run.filename), config.pdf_bucket),
        }
        return jsonify(format_stored_run(run, flows, report, urls))

    @app.route('/diagram/<run_id>', methods=['GET'])
    async def get_diagram(run_id):
        if records is None:
            return _not_configured()

        run = await records.get_run(run_id)
        if run is None:
            return jsonify({"success": False, "error": "Run not found"}), 404

        url = await _signed_url(blobs, diagram_key(run_id), config.diagram_bucket)
        if url is None:
            return jsonify({"success": False, "error": "Diagram not yet generated", "available": False}), 404
        return jsonify({"success": True, "diagramUrl": url, "runId": run_id})

    @app.route('/results/<run_id>', methods=['DELETE'])
    async def delete_results(run_id):
        if records is None:
            return _not_configured()

        run = await records.get_run(run_id)
        if run is None:
            return jsonify({"success": False, "error": "Run not found"}), 404

        await blobs.delete_prefix(config.pdf_bucket, run_id)
        await blobs.delete_prefix(config.diagram_bucket, run_id)
        await records.delete_run(run_id)
        return jsonify({"success": True, "runId": run_id})

    @app.errorhandler(StorageError)
    def storage_failure(e):
        logging.error(f"Storage Error: {e}")
        return jsonify({"success": False, "error": str(e)}), 500

    @app.errorhandler(413)
    def too_large(e):
        return jsonify({
            "success": False,
            "error": f"File too large. Max is {config.max_upload_mb}MB."
        }), 413

    return app


async def _signed_url(blobs, path, bucket):
    try:
        return await blobs.get_signed_url(path, bucket)
    except StorageError as e:
        # Object might not exist yet
        logging.warning(f"No signed URL for {bucket}/{path}: {e}")
        return None


def _optional(raw, parse):
    if raw is None or raw == '':
        return None
    return parse(raw)


def _non_negative_int(raw):
    value = int(raw)
    if value < 0:
        raise ValueError("max_retries must be >= 0")
    return value


def _fraction(raw):
    return check_threshold(float(raw))


if __name__ == '__main__':
    config = Config.from_env()
    setup_logging(config)
    logging.info("Server starting up...")
    app = create_app(config=config)
    port = int(os.environ.get('PORT', 5000))
    app.run(host='0.0.0.0', port=port, debug=os.environ.get('FLASK_DEBUG', 'False') == 'True')
