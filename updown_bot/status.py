from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


def _read_json(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        return json.loads(path.read_text())
    except (json.JSONDecodeError, OSError):
        return {}


def _write_json(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    # Write-then-rename so the dashboard never reads a half-written file.
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(payload, indent=2, sort_keys=True, default=str))
    tmp.replace(path)


def write_status(path: Path, agent: str, **fields: Any) -> dict[str, Any]:
    payload = _read_json(path)
    payload.update(fields)
    payload["agent"] = agent
    payload["updated_at"] = datetime.now(timezone.utc).isoformat()
    _write_json(path, payload)
    return payload
