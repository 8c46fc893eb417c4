"""構造化JSONログ

課金イベントの追跡用に organization_id / event_id / event_type を
トップレベルのキーとして出力する (logger.info(..., extra={...}) で指定)。
"""
import json
import logging
import sys
from datetime import datetime, timezone

# extra= で渡された場合にトップレベルへ出すキー
CONTEXT_FIELDS = ("organization_id", "event_id", "event_type", "stripe_subscription_id")


class JSONFormatter(logging.Formatter):
    """構造化JSONログフォーマッター"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_entry[field] = value
        if record.exc_info and record.exc_info[0]:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, ensure_ascii=False, default=str)


def setup_logging(debug: bool = False):
    """ロギング設定を初期化"""
    level = logging.DEBUG if debug else logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)

    # 依存ライブラリのデバッグログは課金ログに混ぜない
    for noisy in ("sqlalchemy.engine", "stripe", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
