import csv
import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Union


def report_path(report_dir: Union[Path, str], run_id: str) -> Path:
    return Path(report_dir) / f"{run_id}.json"


def write_report(report_dir: Union[Path, str], run_id: str, report: Dict[str, Any]) -> Path:
    """Write the terminal run report as <report_dir>/<run_id>.json."""
    path = report_path(report_dir, run_id)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".json.tmp")
    with tmp.open("w", encoding="utf-8") as f:
        json.dump(report, f, indent=2, ensure_ascii=False, default=str)
    tmp.replace(path)
    return path


def load_report(path: Path) -> Optional[Dict[str, Any]]:
    if not path.exists():
        return None
    try:
        with path.open("r", encoding="utf-8") as f:
            content = f.read().strip()
            if not content:
                return None
            return json.loads(content)
    except (json.JSONDecodeError, IOError):
        return None


def load_records(path: Union[Path, str]) -> List[Dict[str, Any]]:
    """
    Read subject records for a backfill run.

    Supports a JSON array (or an object with a "records" array), JSON Lines,
    and CSV with a header row. Order is preserved: it defines the run cursor.

    Raises:
        ValueError: unsupported extension or malformed content
    """
    path = Path(path)
    suffix = path.suffix.lower()

    if suffix == ".json":
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        if isinstance(data, dict):
            data = data.get("records", [])
        if not isinstance(data, list):
            raise ValueError(f"{path}: expected a list of records")
        return [dict(r) for r in data]

    if suffix in (".jsonl", ".ndjson"):
        records = []
        with path.open("r", encoding="utf-8") as f:
            for line_no, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(dict(json.loads(line)))
                except json.JSONDecodeError as e:
                    raise ValueError(f"{path}:{line_no}: {e}") from e
        return records

    if suffix == ".csv":
        with path.open("r", encoding="utf-8", newline="") as f:
            return [dict(row) for row in csv.DictReader(f)]

    raise ValueError(f"Unsupported record file type: {path.suffix or '(none)'}")
