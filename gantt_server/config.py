import os

TRUE_VALUES = ('1', 'true', 'yes', 'on')


def parse_bool(value, default=False):
    if isinstance(value, bool):
        return value
    if value is None or value == '':
        return default
    return str(value).strip().lower() in TRUE_VALUES


def parse_number(value, fallback):
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return fallback
    return int(parsed) if parsed.is_integer() else parsed


def load_config(environ=None):
    """Read server settings from the environment (fallbacks are for dev only)."""
    env = os.environ if environ is None else environ
    data_dir = env.get('GANTT_DATA_DIR') or env.get('DATA_DIR') or 'Data'
    return {
        'SECRET_KEY': env.get('SECRET_KEY', 'dev-insecure-change-me'),
        'DATA_DIR': data_dir,
        'ENABLE_BAK': parse_bool(env.get('GANTT_ENABLE_BAK'), default=True),
        'LOCK_TIMEOUT_MINUTES': parse_number(env.get('GANTT_LOCK_TIMEOUT_MINUTES'), 60),
        'LOCK_SWEEP_SECONDS': parse_number(env.get('GANTT_LOCK_SWEEP_SECONDS'), 60),
        'ADMIN_TTL_HOURS': parse_number(env.get('GANTT_ADMIN_TTL_HOURS'), 8),
        'MAX_CONTENT_LENGTH': parse_number(env.get('GANTT_MAX_UPLOAD_BYTES'), 2000000),
        'ADMIN_USER': env.get('GANTT_ADMIN_USER', 'admin'),
        'ADMIN_PASSWORD': env.get('GANTT_ADMIN_PASSWORD', 'ChangeMe123!'),
        'SQLALCHEMY_DATABASE_URI': env.get('GANTT_DATABASE_URL'),
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'LOG_LEVEL': env.get('GANTT_LOG_LEVEL', 'INFO').upper(),
    }


def data_paths(data_dir):
    return {
        'root': data_dir,
        'departments': os.path.join(data_dir, 'departments'),
        'config': os.path.join(data_dir, 'config'),
    }
