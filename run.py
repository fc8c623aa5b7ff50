"""
Production entry point: `python run.py`.

FLASK_HOST / FLASK_PORT pick the bind address, USE_WAITRESS=0 switches to the
Flask development server and WAITRESS_THREADS sizes the worker pool.
"""
import os
import sys
import logging
from logging.handlers import RotatingFileHandler

from sqlalchemy import inspect

from config import Config
from app import create_app, seed_essential_data
from models import db

logger = logging.getLogger('mizan')


def configure_logging(logfile=None):
    logfile = logfile or Config.LOG_FILE
    handlers = [logging.StreamHandler()]
    try:
        handlers.append(RotatingFileHandler(logfile, maxBytes=10 * 1024 * 1024, backupCount=5,
                                            encoding='utf-8'))
    except OSError as e:
        print(f"WARNING: file logging disabled, cannot open {logfile}: {e}", file=sys.stderr)
        logfile = None
    for handler in handlers:
        handler.setLevel(logging.INFO)
    logging.basicConfig(
        level=os.environ.get('LOGLEVEL', 'INFO'),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
        handlers=handlers,
    )
    return logfile


def initialize_database(app):
    """Create the schema on an empty database and seed the first admin's defaults."""
    with app.app_context():
        if inspect(db.engine).has_table('user'):
            logger.info("Database schema present")
            return False
        logger.info("Empty database, creating tables")
        db.create_all()
    seed_essential_data(app)
    return True


def serve(app):
    host = os.environ.get('FLASK_HOST', '0.0.0.0')
    port = int(os.environ.get('FLASK_PORT', '5000'))
    if os.environ.get('USE_WAITRESS', '1').lower() in ('0', 'false', 'no'):
        logger.info("Serving on %s:%s (Flask dev server)", host, port)
        app.run(host=host, port=port, debug=Config.DEBUG, use_reloader=False)
        return
    from waitress import serve as waitress_serve
    threads = int(os.environ.get('WAITRESS_THREADS', '8'))
    logger.info("Serving on %s:%s (waitress, %d threads)", host, port, threads)
    waitress_serve(app, host=host, port=port, threads=threads)


def main():
    logfile = configure_logging()
    logger.info("Log file: %s", logfile or '(console only)')
    logger.info("Base directory: %s", Config.BASE_DIR)

    app = create_app()
    try:
        initialize_database(app)
    except Exception:
        logger.exception("Database initialisation failed; check db_config.ini or DATABASE_URL")
        return 1
    serve(app)
    return 0


if __name__ == '__main__':
    sys.exit(main())
