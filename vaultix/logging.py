import structlog, sys, pathlib, os

_LOG_STREAM = None

SECRET_FIELDS = ("secret", "password", "key", "recovery_key", "master_key")


def _log_path() -> pathlib.Path:
    default = pathlib.Path.home() / ".local" / "state" / "vaultix" / "vaultix.log"
    return pathlib.Path(os.environ.get("VAULTIX_LOG", default))


def _log_handle():
    """Open (or reuse) the append-only 0600 log file under ~/.local/state/vaultix."""
    global _LOG_STREAM
    if _LOG_STREAM is None or _LOG_STREAM.closed:
        path = _log_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o600)
        if os.name == "posix":
            os.chmod(path, 0o600)
        _LOG_STREAM = os.fdopen(fd, "a", buffering=1, encoding="utf-8", errors="backslashreplace")
    return _LOG_STREAM


def _human_renderer(_, __, event_dict):
    """Render structlog event dictionaries into human-readable timestamped lines."""
    ts = event_dict.pop("timestamp", "")
    level = event_dict.pop("level", "").upper()
    event = event_dict.pop("event", "")
    extras = " ".join(f"{k}={event_dict[k]}" for k in sorted(event_dict))
    return f"{ts} [{level}] {event} {extras}".strip()


def _filter_secrets(_, __, event_dict):
    for field in SECRET_FIELDS:
        event_dict.pop(field, None)
    return event_dict


def get_logger(debug: bool = False):
    """Return a structlog logger; stderr in debug, otherwise the vaultix log file."""
    processors = [
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.format_exc_info,
        _human_renderer,
    ]

    if not debug:
        processors = [_filter_secrets] + processors
        target = _log_handle()
    else:
        target = sys.stderr

    structlog.configure(
        processors=processors,
        logger_factory=structlog.PrintLoggerFactory(file=target),
    )
    return structlog.get_logger()
