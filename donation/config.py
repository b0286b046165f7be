import os
from pathlib import Path
from urllib.parse import unquote, urlparse

from django.core.exceptions import ImproperlyConfigured
from dotenv import load_dotenv

TRUTHY = {"1", "true", "yes", "on"}
SQLITE_ENGINE = "django.db.backends.sqlite3"
POSTGRES_ENGINE = "django.db.backends.postgresql"
URL_ENGINES = {
    "sqlite": SQLITE_ENGINE,
    "postgres": POSTGRES_ENGINE,
    "postgresql": POSTGRES_ENGINE,
}


def load_environment(base_dir):
    """Read ``.env`` next to manage.py; real environment variables win."""
    load_dotenv(base_dir / ".env", override=False)


def _raw(name):
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def env_bool(name, default=False):
    value = _raw(name)
    return default if value is None else value.lower() in TRUTHY


def _env_number(name, default, cast, kind, minimum):
    value = _raw(name)
    try:
        result = default if value is None else cast(value)
    except ValueError as exc:
        raise ImproperlyConfigured(f"{name} must be {kind}, got {value!r}") from exc
    if minimum is not None and result < minimum:
        raise ImproperlyConfigured(f"{name} must be >= {minimum}, got {result}")
    return result


def env_int(name, default, *, minimum=None):
    return _env_number(name, default, int, "an integer", minimum)


def env_float(name, default, *, minimum=None):
    return _env_number(name, default, float, "a number", minimum)


def env_list(name, default=None):
    value = os.getenv(name)
    if value is None:
        return list(default or [])
    return [item.strip() for item in value.split(",") if item.strip()]


def env_choice(name, default, choices):
    value = (_raw(name) or default).lower()
    if value not in choices:
        raise ImproperlyConfigured(
            f"{name} must be one of: {', '.join(sorted(choices))}"
        )
    return value


def _sqlite_path(base_dir, name):
    if not name or name == "/":
        return str(base_dir / "db.sqlite3")
    if name == ":memory:" or Path(name).is_absolute():
        return name
    return str(base_dir / name)


def parse_database_url(base_dir, database_url):
    """Translate ``sqlite:///path`` or ``postgres://user:pw@host/db`` into Django settings."""
    parsed = urlparse(database_url)
    engine = URL_ENGINES.get(parsed.scheme.split("+", 1)[0])
    if engine is None:
        raise ImproperlyConfigured(
            "DATABASE_URL must use one of: " + ", ".join(f"{s}://" for s in URL_ENGINES)
        )

    if engine == SQLITE_ENGINE:
        # sqlite:///rel.db is relative to base_dir, sqlite:////abs.db is absolute
        name = unquote(parsed.netloc + parsed.path)
        if name.startswith("/") and not parsed.netloc:
            name = name[1:]
        return {"ENGINE": engine, "NAME": _sqlite_path(base_dir, name)}

    return {
        "ENGINE": engine,
        "NAME": unquote(parsed.path.lstrip("/")),
        "USER": unquote(parsed.username or ""),
        "PASSWORD": unquote(parsed.password or ""),
        "HOST": parsed.hostname or "",
        "PORT": str(parsed.port or ""),
    }


def build_databases(base_dir):
    """Return ``(DATABASE_URL, DATABASES)``; the URL takes precedence over ``DB_*``."""
    database_url = _raw("DATABASE_URL")
    if database_url:
        return database_url, {"default": parse_database_url(base_dir, database_url)}

    engine = os.getenv("DB_ENGINE", SQLITE_ENGINE)
    name = os.getenv("DB_NAME", "db.sqlite3")
    default = {"ENGINE": engine, "NAME": name}
    if engine == SQLITE_ENGINE:
        default["NAME"] = _sqlite_path(base_dir, name)
    else:
        default.update(
            {
                key: os.getenv(f"DB_{key}", "")
                for key in ("USER", "PASSWORD", "HOST", "PORT")
            }
        )
    return database_url, {"default": default}
