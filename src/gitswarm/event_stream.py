"""Engine event log written as one JSON object per line."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any


def _event_record(
	event_type: str, repo_id: str, stream_id: str, agent_id: str, details: dict[str, Any] | None,
) -> str:
	return json.dumps(
		{
			"timestamp": datetime.now(timezone.utc).isoformat(),
			"event_type": event_type,
			"repo_id": repo_id,
			"stream_id": stream_id,
			"agent_id": agent_id,
			"details": details or {},
		},
		separators=(",", ":"),
	)


class EventStream:
	"""Line-buffered JSONL sink for merges, conflicts, promotions and reverts.

	Each event lands on disk as soon as it is emitted so CI hooks can
	tail the file. Usable as a context manager. Events emitted while
	the sink is closed are dropped.
	"""

	def __init__(self, path: Path) -> None:
		self._path = path
		self._sink: IO[str] | None = None

	@property
	def path(self) -> Path:
		return self._path

	@property
	def is_open(self) -> bool:
		return self._sink is not None

	def open(self) -> None:
		if self._sink is not None:
			return
		self._path.parent.mkdir(parents=True, exist_ok=True)
		self._sink = self._path.open("a", encoding="utf-8", buffering=1)

	def close(self) -> None:
		sink, self._sink = self._sink, None
		if sink is not None:
			sink.close()

	def __enter__(self) -> EventStream:
		self.open()
		return self

	def __exit__(self, *exc_info: object) -> None:
		self.close()

	def emit(
		self,
		event_type: str,
		*,
		repo_id: str = "",
		stream_id: str = "",
		agent_id: str = "",
		details: dict[str, Any] | None = None,
	) -> None:
		if self._sink is None:
			return
		print(_event_record(event_type, repo_id, stream_id, agent_id, details), file=self._sink)
