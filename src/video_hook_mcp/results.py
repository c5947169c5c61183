"""Result collection and CSV/JSON export."""

from __future__ import annotations

import csv
import io
import json
import logging
from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path

from .models.analysis import HOOK_FIELDS, AnalysisResult, AnalysisStatus
from .persistence import QueueStateDB

logger = logging.getLogger(__name__)

# (attribute, CSV header) in export order
EXPORT_COLUMNS: tuple[tuple[str, str], ...] = (
    ("filename", "Filename"),
    ("status", "Status"),
    ("visual_hook", "Visual Hook"),
    ("text_hook", "Text Hook"),
    ("voice_hook", "Voice Hook"),
    ("video_script", "Video Script"),
    ("pain_point", "Pain Point"),
    ("processing_time", "Processing Time (ms)"),
    ("created_at", "Created At"),
    ("completed_at", "Completed At"),
)

_ALWAYS_EXPORTED = ("filename", "status")


class ResultCollector:
    """Queue subscriber that keeps the latest result per item id.

    Wire it with ``queue.subscribe(on_result=collector.add,
    on_item_status=collector.add)``. Once bound to a store, terminal
    results are written through on every change and restored on bind.
    """

    def __init__(self) -> None:
        self._results: dict[str, AnalysisResult] = {}
        self._store: QueueStateDB | None = None
        self._store_key = ""

    def bind(self, store: QueueStateDB, key: str) -> None:
        """Persist to *store*; an empty collector first loads what was saved."""
        self._store = store
        self._store_key = key
        if self._results:
            self._save()
            return
        for result in store.load_results(key):
            self._results[result.id] = result
        if self._results:
            logger.info("Restored %d saved result(s)", len(self._results))

    def _save(self) -> None:
        if self._store is not None:
            self._store.save_results(
                self._store_key, [r for r in self._results.values() if r.is_terminal],
            )

    def add(self, result: AnalysisResult) -> None:
        previous = self._results.get(result.id)
        self._results[result.id] = result
        if result.is_terminal or (previous is not None and previous.is_terminal):
            self._save()

    def get(self, item_id: str) -> AnalysisResult | None:
        return self._results.get(item_id)

    def results(self, status: AnalysisStatus | str | None = None) -> list[AnalysisResult]:
        """All results in insertion order, optionally filtered by status."""
        if status is None:
            return list(self._results.values())
        wanted = AnalysisStatus(status)
        return [r for r in self._results.values() if r.status is wanted]

    def failed(self) -> list[AnalysisResult]:
        return self.results(AnalysisStatus.ERROR)

    def discard(self, ids: Iterable[str]) -> int:
        removed = 0
        for item_id in ids:
            if self._results.pop(item_id, None) is not None:
                removed += 1
        if removed:
            self._save()
        return removed

    def clear(self) -> None:
        self._results.clear()
        self._save()

    def __len__(self) -> int:
        return len(self._results)


def _selected_columns(fields: Iterable[str] | None) -> list[tuple[str, str]]:
    if fields is None:
        return list(EXPORT_COLUMNS)
    wanted = set(fields)
    unknown = wanted - set(HOOK_FIELDS) - {name for name, _ in EXPORT_COLUMNS}
    if unknown:
        raise ValueError(f"Unknown export field(s): {', '.join(sorted(unknown))}")
    wanted.update(_ALWAYS_EXPORTED)
    return [(name, header) for name, header in EXPORT_COLUMNS if name in wanted]


def _filter(
    results: Iterable[AnalysisResult], status: AnalysisStatus | str | None,
) -> list[AnalysisResult]:
    if status is None:
        return list(results)
    wanted = AnalysisStatus(status)
    return [r for r in results if r.status is wanted]


def _cell(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, AnalysisStatus):
        return value.value
    if isinstance(value, float):
        return f"{value:.0f}"
    return str(value)


def export_csv(
    results: Iterable[AnalysisResult],
    *,
    fields: Iterable[str] | None = None,
    status: AnalysisStatus | str | None = None,
) -> str:
    """Render results as CSV text.

    Args:
        results: Results to export.
        fields: Attribute names to include; filename and status are always kept.
        status: Only export results with this status.

    Raises:
        ValueError: If *fields* names an unknown column or *status* is invalid.
    """
    columns = _selected_columns(fields)
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")
    writer.writerow([header for _, header in columns])
    for result in _filter(results, status):
        writer.writerow([_cell(getattr(result, name)) for name, _ in columns])
    return buffer.getvalue()


def export_json(
    results: Iterable[AnalysisResult],
    *,
    fields: Iterable[str] | None = None,
    status: AnalysisStatus | str | None = None,
) -> str:
    """Render results as a JSON document with an export timestamp."""
    columns = _selected_columns(fields)
    include = {name for name, _ in columns} | {"id", "error", "error_code"}
    selected = _filter(results, status)
    document = {
        "exported_at": datetime.now(timezone.utc).isoformat(),
        "count": len(selected),
        "results": [r.model_dump(mode="json", include=include) for r in selected],
    }
    return json.dumps(document, indent=2)


def write_export(content: str, path: str | Path) -> Path:
    """Write exported text to *path*, creating parent directories."""
    target = Path(path).expanduser()
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content, encoding="utf-8")
    logger.info("Exported results to %s", target)
    return target
