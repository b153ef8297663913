"""
VBA Unlocker - Main Flask Application
"""
import io
import logging

from flask import Flask, jsonify, request, send_file
from werkzeug.utils import secure_filename

from config import get_config
from module_exporter import build_module_archive, create_vba_code_file, export_filename
from unlock_pipeline import WorkbookUnlocker

cfg = get_config()

logging.basicConfig(
    level=getattr(logging, cfg.LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = Flask(__name__)
app.config["SECRET_KEY"] = cfg.SECRET_KEY
app.config["MAX_CONTENT_LENGTH"] = cfg.MAX_CONTENT_LENGTH

ALLOWED_EXTENSIONS = cfg.ALLOWED_EXTENSIONS


def allowed_file(filename):
    """Check if the file has an allowed extension."""
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in ALLOWED_EXTENSIONS


def _read_upload():
    """Return ``(filename, data, None)`` or ``(None, None, error_response)``."""
    if 'file' not in request.files:
        return None, None, (jsonify({'error': 'No file provided'}), 400)

    file = request.files['file']

    if file.filename == '':
        return None, None, (jsonify({'error': 'No file selected'}), 400)

    if not allowed_file(file.filename):
        return None, None, (jsonify({
            'error': f'Invalid file type. Allowed types: {", ".join(sorted(ALLOWED_EXTENSIONS))}'
        }), 400)

    filename = secure_filename(file.filename) or 'workbook.xlsm'
    return filename, file.read(), None


def _extract(filename, data):
    unlocker = WorkbookUnlocker(data, filename, config=cfg)
    return unlocker.extract_modules()


@app.errorhandler(413)
def file_too_large(_error):
    return jsonify({'error': f'File is too large (max {cfg.MAX_FILE_SIZE_MB}MB)'}), 413


@app.route('/')
def index():
    """Describe the available endpoints."""
    return jsonify({
        'service': 'vba-unlocker',
        'endpoints': ['/api/unlock', '/api/extract', '/api/extract/export', '/api/extract/archive'],
        'allowed_extensions': sorted(ALLOWED_EXTENSIONS),
        'max_file_size_mb': cfg.MAX_FILE_SIZE_MB,
    })


@app.route('/api/unlock', methods=['POST'])
def unlock_file():
    """Remove the VBA password and return the unlocked workbook."""
    filename, data, error = _read_upload()
    if error:
        return error

    result = WorkbookUnlocker(data, filename, config=cfg).remove_protection()
    if not result.success:
        return jsonify({'error': 'Could not unlock the file', 'log': result.log.to_list()}), 422

    logger.info("Unlocked %s (%d integrity issue(s) repaired)", filename, len(result.issues))
    return send_file(
        io.BytesIO(result.data),
        mimetype=result.mime_type,
        as_attachment=True,
        download_name=result.filename,
    )


@app.route('/api/extract', methods=['POST'])
def extract_modules():
    """Extract the VBA modules as JSON."""
    filename, data, error = _read_upload()
    if error:
        return error

    result = _extract(filename, data)
    if not result.success:
        return jsonify({'error': 'No VBA code could be extracted', 'log': result.log.to_list()}), 422

    return jsonify({
        'success': True,
        'filename': filename,
        'strategy': result.strategy,
        'modules': [m.to_dict() for m in result.modules],
        'log': result.log.to_list(),
    })


@app.route('/api/extract/export', methods=['POST'])
def export_modules():
    """Extract the VBA modules into a single text file."""
    filename, data, error = _read_upload()
    if error:
        return error

    result = _extract(filename, data)
    if not result.success:
        return jsonify({'error': 'No VBA code could be extracted', 'log': result.log.to_list()}), 422

    content = create_vba_code_file(result.modules, filename)
    return send_file(
        io.BytesIO(content.encode('utf-8')),
        mimetype='text/plain',
        as_attachment=True,
        download_name=export_filename(filename, '_vba_code.txt'),
    )


@app.route('/api/extract/archive', methods=['POST'])
def archive_modules():
    """Extract the VBA modules into a ZIP of .bas/.cls/.frm files."""
    filename, data, error = _read_upload()
    if error:
        return error

    result = _extract(filename, data)
    if not result.success:
        return jsonify({'error': 'No VBA code could be extracted', 'log': result.log.to_list()}), 422

    return send_file(
        io.BytesIO(build_module_archive(result.modules)),
        mimetype='application/zip',
        as_attachment=True,
        download_name=export_filename(filename, '_vba_modules.zip'),
    )


if __name__ == '__main__':
    app.run(debug=cfg.DEBUG, port=5000)
