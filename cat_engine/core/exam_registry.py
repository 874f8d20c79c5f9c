"""
In-process registry of exam definitions served by the HTTP surface.

Each registered exam gets one SessionController sharing the process-wide
exposure store. Definitions can be registered programmatically or loaded at
startup from a JSON file holding a list of ExamDefinition objects.
"""
import logging
import threading
from pathlib import Path
from typing import Dict, List, Optional, Union

from pydantic import TypeAdapter, ValidationError

from cat_engine.core.cat.engine import SessionController, validate_config
from cat_engine.core.cat.exposure_store import ExposureStore, InMemoryExposureStore
from cat_engine.core.errors import InvalidConfiguration
from cat_engine.schemas.cat import ExamDefinition

logger = logging.getLogger(__name__)

_definitions_adapter = TypeAdapter(List[ExamDefinition])


class ExamRegistry:
    """Thread-safe mapping of exam_id -> SessionController."""

    def __init__(self, exposure_store: Optional[ExposureStore] = None):
        self.exposure_store = exposure_store or InMemoryExposureStore()
        self._lock = threading.Lock()
        self._controllers: Dict[str, SessionController] = {}

    def register(self, definition: ExamDefinition) -> SessionController:
        """
        Register (or replace) an exam definition.

        Raises:
            InvalidConfiguration: If the configuration does not validate
                against the exam's item bank.
        """
        validate_config(definition.config, definition.item_bank)
        controller = SessionController(
            definition.item_bank,
            definition.config,
            exposure_store=self.exposure_store,
        )
        with self._lock:
            replaced = definition.exam_id in self._controllers
            self._controllers[definition.exam_id] = controller
        logger.info(
            f"{'Replaced' if replaced else 'Registered'} exam {definition.exam_id} "
            f"({len(definition.item_bank)} items)",
            extra={"exam_id": definition.exam_id},
        )
        return controller

    def get(self, exam_id: str) -> Optional[SessionController]:
        with self._lock:
            return self._controllers.get(exam_id)

    def exam_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._controllers)

    def __contains__(self, exam_id: object) -> bool:
        with self._lock:
            return exam_id in self._controllers

    def __len__(self) -> int:
        with self._lock:
            return len(self._controllers)

    def load_file(self, path: Union[str, Path]) -> int:
        """
        Register every exam definition in a JSON file.

        Returns:
            Number of exams registered.

        Raises:
            InvalidConfiguration: If the file does not parse or an exam does
                not validate.
        """
        payload = Path(path).read_text(encoding="utf-8")
        try:
            definitions = _definitions_adapter.validate_json(payload)
        except ValidationError as e:
            raise InvalidConfiguration(
                "Exam definitions file failed validation",
                original_error=e,
                context={"path": str(path)},
            ) from e

        for definition in definitions:
            self.register(definition)
        logger.info(f"Loaded {len(definitions)} exam definitions from {path}")
        return len(definitions)
