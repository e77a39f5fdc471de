from __future__ import annotations

import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def main() -> int:
    try:
        from celery_app import celery

        _ = str(celery.conf.broker_url or "")
        missing = [name for name in celery.conf.beat_schedule if not celery.conf.beat_schedule[name].get("task")]
        if missing:
            print(f"error: beat entries without task: {missing}", file=sys.stderr)
            return 1
        print(f"ok: celery_app:celery import succeeded ({len(celery.conf.beat_schedule)} beat entries)")
        return 0
    except Exception as exc:
        print(f"error: failed to import celery_app:celery -> {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
