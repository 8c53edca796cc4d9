import logging
from flask_socketio import SocketIO
import json
from datetime import datetime

socketio = None
flask_app = None


class SocketIOHandler(logging.Handler):
    """Forward log records to connected UI clients as 'log' events."""

    def emit(self, record):
        if socketio and flask_app:
            log_entry = {
                'level': record.levelname,
                'message': record.getMessage(),
                'module': record.module,
                'timestamp': datetime.fromtimestamp(record.created).strftime('%Y-%m-%d %H:%M:%S')
            }
            try:
                socketio.emit('log', json.dumps(log_entry), namespace='/')
            except Exception:
                self.handleError(record)


def init_socketio(app):
    global socketio, flask_app
    socketio = SocketIO(app, cors_allowed_origins="*", async_mode='threading', logger=False, engineio_logger=False)
    flask_app = app
    return socketio


def emit_event(event_name, payload):
    """Push a structured event (invoice, zap status) to the UI.

    Returns False when no Socket.IO server has been initialised.
    """
    if not socketio:
        logging.info(f"[UI] No socket attached, dropping '{event_name}' event")
        return False
    socketio.emit(event_name, payload, namespace='/')
    return True


def get_socketio_logger(name='socketio_logger'):
    logger = logging.getLogger(name)
    if not logger.handlers:
        logger.addHandler(SocketIOHandler())
        logger.setLevel(logging.INFO)
        logger.propagate = False
    return logger
