"""
Recording Store - persists agent exchanges with atomic writes.

Directory structure:
    recordings/
        {request_id}.json      # one AgentInteraction per file
"""

import asyncio
import logging
from pathlib import Path

from pydantic import ValidationError

from machina.schemas.recording import AgentInteraction
from machina.utils.io import atomic_write

logger = logging.getLogger(__name__)


class RecordingStore:
    """File-backed store of AgentInteraction records keyed by request id."""

    def __init__(self, base_path: Path):
        """
        Args:
            base_path: Directory that holds (or will hold) ``recordings/``.
        """
        self.base_path = Path(base_path)
        self.recordings_dir = self.base_path / "recordings"

    def _path_for(self, request_id: str) -> Path:
        return self.recordings_dir / f"{request_id}.json"

    async def save(self, interaction: AgentInteraction) -> None:
        """
        Atomically persist one interaction.

        Raises:
            OSError: If the file write fails
        """

        def _write():
            self.recordings_dir.mkdir(parents=True, exist_ok=True)
            with atomic_write(self._path_for(interaction.request_id)) as f:
                f.write(interaction.model_dump_json(indent=2))
            logger.debug(f"Saved recording {interaction.request_id}")

        await asyncio.to_thread(_write)

    async def load(self, request_id: str) -> AgentInteraction | None:
        def _read() -> AgentInteraction | None:
            path = self._path_for(request_id)
            if not path.exists():
                return None
            return AgentInteraction.model_validate_json(path.read_text(encoding="utf-8"))

        return await asyncio.to_thread(_read)

    async def list_ids(self) -> list[str]:
        def _list() -> list[str]:
            if not self.recordings_dir.exists():
                return []
            return sorted(p.stem for p in self.recordings_dir.glob("*.json"))

        return await asyncio.to_thread(_list)

    async def load_all(self) -> list[AgentInteraction]:
        """All readable recordings, sorted by request id. Corrupt files are skipped."""

        def _read_all() -> list[AgentInteraction]:
            if not self.recordings_dir.exists():
                return []
            interactions = []
            for path in sorted(self.recordings_dir.glob("*.json")):
                try:
                    interactions.append(
                        AgentInteraction.model_validate_json(path.read_text(encoding="utf-8"))
                    )
                except (ValidationError, OSError) as e:
                    logger.warning(f"Skipping unreadable recording {path.name}: {e}")
            return interactions

        return await asyncio.to_thread(_read_all)
