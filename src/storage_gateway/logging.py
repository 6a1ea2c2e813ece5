import logging, sys, json

# поля из extra=..., которые попадают в JSON как есть
CONTEXT_FIELDS = ("event", "file_id", "owner_id", "node_id", "session_id", "backend_type", "chunk_number")


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        base = {
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                base[field] = value
        if record.exc_info:
            base["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(base, ensure_ascii=False, default=str)


def configure(level: str = "INFO") -> None:
    """Ставит JSON-логирование в stdout. Вызывается из CLI, не при импорте."""
    resolved = getattr(logging, level.upper(), logging.INFO)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    logging.basicConfig(level=resolved, handlers=[handler], force=True)
    # SDK'шки слишком болтливы на DEBUG
    for noisy in ("botocore", "boto3", "urllib3", "paramiko"):
        logging.getLogger(noisy).setLevel(max(resolved, logging.WARNING))
