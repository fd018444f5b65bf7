"""Model manager: locate, download and load the ONNX classification model.

The model comes either from a bundled local file or from a HuggingFace
repository. Loading produces an ``OnnxImageClassifier`` bound to one
``InferenceSession``; the inference engine decides when (and how often) to
call it.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from onnxruntime import ExecutionMode, GraphOptimizationLevel, InferenceSession, SessionOptions

from snaplabel.ml.image_classifier import OnnxImageClassifier

if TYPE_CHECKING:
    from snaplabel.config import Settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for model location and loading."""

    @property
    def source(self) -> ModelSource:
        """Return where the model is loaded from."""
        ...

    def ensure_available(self) -> Path:
        """Ensure the model file exists locally and return its path."""
        ...

    def load_classifier(self) -> OnnxImageClassifier:
        """Create a session and wrap it in a classifier."""
        ...


# ---------------------------------------------------------------------------
# Model source
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelSource:
    """Static description of where the model artifact lives."""

    name: str
    local_path: Path | None
    repo_id: str | None
    filename: str

    @property
    def origin(self) -> str:
        if self.local_path is not None:
            return str(self.local_path)
        if self.repo_id is not None:
            return f"hf://{self.repo_id}/{self.filename}"
        return "unconfigured"

    @classmethod
    def from_settings(cls, settings: Settings) -> ModelSource:
        local_path = Path(settings.model_path) if settings.model_path else None
        filename = local_path.name if local_path is not None else settings.model_filename
        return cls(
            name=Path(filename).stem,
            local_path=local_path,
            repo_id=settings.model_repo_id,
            filename=filename,
        )


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModelManager:
    """Locates the model file and builds ONNX Runtime sessions for it."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._source = ModelSource.from_settings(settings)
        self._models_dir = Path(settings.models_dir)

        self._lock = threading.Lock()
        self._model_path: Path | None = None

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    @property
    def source(self) -> ModelSource:
        return self._source

    def ensure_available(self) -> Path:
        """Return the local model path, downloading from HuggingFace if needed.

        Raises:
            FileNotFoundError: If the bundled model file does not exist.
            RuntimeError: If neither a local path nor a repository is configured.
        """
        with self._lock:
            if self._model_path is not None and self._model_path.exists():
                return self._model_path

            source = self._source
            if source.local_path is not None:
                if not source.local_path.is_file():
                    raise FileNotFoundError(f"Model file not found: {source.local_path}")
                self._model_path = source.local_path
                return self._model_path

            if source.repo_id is None:
                raise RuntimeError("No model configured: set SNAPLABEL_MODEL_PATH or SNAPLABEL_MODEL_REPO_ID")

            self._models_dir.mkdir(parents=True, exist_ok=True)
            downloaded = Path(
                hf_hub_download(
                    repo_id=source.repo_id,
                    filename=source.filename,
                    local_dir=str(self._models_dir),
                )
            )
            self._model_path = downloaded
            logger.info("Downloaded %s to %s", source.name, downloaded)
            return downloaded

    def load_classifier(self) -> OnnxImageClassifier:
        """Create an InferenceSession for the model and wrap it."""
        model_path = self.ensure_available()
        session = InferenceSession(
            str(model_path),
            sess_options=self._session_options,
            providers=self._providers,
        )
        classifier = OnnxImageClassifier(
            session,
            model_name=self._source.name,
            labels=self._settings.labels,
            min_confidence=self._settings.min_confidence,
        )
        logger.info(
            "Loaded session for %s (%d labels, providers=%s)",
            self._source.name,
            len(classifier.labels),
            session.get_providers(),
        )
        return classifier

    # -- Internal -----------------------------------------------------------

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        """Accelerator provider for the configured device, always backed by CPU."""
        accelerators: dict[str, tuple[str, dict[str, object]]] = {
            "cuda": (
                "CUDAExecutionProvider",
                {
                    "device_id": 0,
                    "gpu_mem_limit": self._settings.gpu_mem_limit,
                    "arena_extend_strategy": "kSameAsRequested",
                },
            ),
            "openvino": ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
        }
        providers: list[str | tuple[str, dict[str, object]]] = []
        accelerator = accelerators.get(self._settings.device)
        if accelerator is not None:
            providers.append(accelerator)
        providers.append("CPUExecutionProvider")
        return providers

    def _build_session_options(self) -> SessionOptions:
        # One image per run: sequential execution with reused buffers.
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True
        # OpenVINO optimizes the graph itself.
        opts.graph_optimization_level = (
            GraphOptimizationLevel.ORT_DISABLE_ALL
            if self._settings.device == "openvino"
            else GraphOptimizationLevel.ORT_ENABLE_ALL
        )
        return opts
