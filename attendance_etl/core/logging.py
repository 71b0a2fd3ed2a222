# attendance_etl/core/logging.py
import json, logging, sys
from datetime import datetime, timezone

# attributes every LogRecord carries; anything else came in through `extra=`
_RESERVED = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    def format(self, record):
        p = {"ts": datetime.now(timezone.utc).isoformat(),
             "level": record.levelname, "logger": record.name, "msg": record.getMessage()}
        for k, v in record.__dict__.items():
            if k not in _RESERVED and not k.startswith("_"):
                p[k] = v
        if record.exc_info: p["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(p, ensure_ascii=False, default=str)


def configure_logging(level=logging.INFO, json_output=True):
    h = logging.StreamHandler(sys.stdout)
    if json_output:
        h.setFormatter(JsonFormatter())
    else:
        h.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root = logging.getLogger(); root.handlers.clear(); root.addHandler(h); root.setLevel(level)
