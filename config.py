import os
import sys
import tempfile
import configparser
from pathlib import Path

APP_NAME = 'mizan'

if getattr(sys, 'frozen', False):
    BASE_DIR = Path(sys.executable).parent
else:
    BASE_DIR = Path(__file__).resolve().parent

RESOURCE_DIR = Path(getattr(sys, '_MEIPASS', BASE_DIR))


def _user_data_dir():
    if os.name == 'nt':
        return Path(os.environ.get('APPDATA', Path.home() / 'AppData' / 'Roaming')) / 'Mizan'
    return Path.home() / '.local' / 'share' / APP_NAME


def _first_writable(*candidates):
    for candidate in candidates:
        if candidate is None:
            continue
        try:
            candidate.mkdir(parents=True, exist_ok=True)
            return candidate
        except OSError:
            continue
    return Path(tempfile.gettempdir()) / f'{APP_NAME}_logs'


def read_ini():
    """db_config.ini next to the executable wins over the bundled copy."""
    parser = configparser.ConfigParser()
    for path in (BASE_DIR / 'db_config.ini', RESOURCE_DIR / 'db_config.ini'):
        if path.exists():
            parser.read(path, encoding='utf-8')
            break
    return parser


def database_uri(parser):
    if parser.has_section('database'):
        url = parser.get('database', 'url', fallback='')
        if url:
            return url
        db = parser['database']
        return (f"mysql+pymysql://{db.get('username', 'mizan_app')}:{db.get('password', '')}"
                f"@{db.get('host', 'localhost')}:{db.get('port', '3306')}/{db.get('database', 'mizan')}"
                f"?charset=utf8mb4")
    return os.environ.get('DATABASE_URL') or f'sqlite:///{BASE_DIR / "mizan.db"}'


def app_setting(parser, key, env, default, cast=str):
    """[app] value from the ini file, else an environment variable, else the default."""
    if parser.has_option('app', key):
        raw = parser.get('app', key)
    else:
        raw = os.environ.get(env)
    if raw is None or raw == '':
        return default
    if cast is bool:
        return str(raw).strip().lower() in ('1', 'true', 'yes', 'on')
    return cast(raw)


def load_secret_key(parser):
    """Configured key, else a key persisted beside the app or in the user's home."""
    key = parser.get('app', 'secret_key', fallback=None)
    if key and key != 'AUTO_GENERATED':
        return key
    local = BASE_DIR / '.secret_key'
    user_file = (Path(os.environ['APPDATA']) / 'Mizan' / '.secret_key' if os.name == 'nt' and 'APPDATA' in os.environ
                 else Path.home() / f'.{APP_NAME}' / '.secret_key')
    try:
        for path in (local, user_file):
            if path.exists():
                return path.read_text().strip()
        key = os.urandom(32).hex()
        user_file.parent.mkdir(parents=True, exist_ok=True)
        user_file.write_text(key)
        try:
            os.chmod(user_file, 0o600)
        except OSError:
            pass
        return key
    except OSError:
        return os.urandom(32).hex()


_ini = read_ini()


class Config:
    BASE_DIR = BASE_DIR
    RESOURCE_DIR = RESOURCE_DIR

    LOG_DIR = _first_writable(
        Path(os.environ['MIZAN_LOG_DIR']) if os.environ.get('MIZAN_LOG_DIR') else None,
        _user_data_dir() / 'logs',
        BASE_DIR / 'logs',
    )
    LOG_FILE = LOG_DIR / f'{APP_NAME}.log'

    SQLALCHEMY_DATABASE_URI = database_uri(_ini)
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    if SQLALCHEMY_DATABASE_URI.startswith('mysql'):
        SQLALCHEMY_ENGINE_OPTIONS = {
            'pool_pre_ping': True,
            'pool_recycle': 280,
            'pool_size': 10,
            'max_overflow': 20,
            'connect_args': {'charset': 'utf8mb4', 'connect_timeout': 10},
        }
    else:
        # SQLite keeps a single connection pool; sizing options do not apply
        SQLALCHEMY_ENGINE_OPTIONS = {'pool_pre_ping': True}

    SECRET_KEY = load_secret_key(_ini)
    DEBUG = app_setting(_ini, 'debug', 'FLASK_DEBUG', False, bool)

    CURRENCY = app_setting(_ini, 'currency', 'MIZAN_CURRENCY', 'DH')
    LOW_STOCK_THRESHOLD = app_setting(_ini, 'low_stock_threshold', 'MIZAN_LOW_STOCK_THRESHOLD', 10, int)
    PAYMENT_DUE_WINDOW_DAYS = app_setting(_ini, 'payment_due_days', 'MIZAN_PAYMENT_DUE_DAYS', 7, int)
    DEFAULT_LANGUAGE = app_setting(_ini, 'language', 'MIZAN_LANGUAGE', 'en')

    CACHE_TYPE = 'SimpleCache'
    CACHE_DEFAULT_TIMEOUT = 60
    DASHBOARD_CACHE_SECONDS = 60

    RATELIMIT_STORAGE_URI = os.environ.get('RATELIMIT_STORAGE_URI', 'memory://')

    JSON_SORT_KEYS = False

    SESSION_COOKIE_SECURE = False
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'
    PERMANENT_SESSION_LIFETIME = 3600


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_ENGINE_OPTIONS = {}
    SECRET_KEY = 'test-secret'
    CACHE_TYPE = 'NullCache'
    RATELIMIT_ENABLED = False
    DEFAULT_LANGUAGE = 'en'
    CURRENCY = 'DH'
    LOW_STOCK_THRESHOLD = 10
    PAYMENT_DUE_WINDOW_DAYS = 7
