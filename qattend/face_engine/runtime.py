import os
import threading
from enum import Enum
from typing import Any, Callable, Dict, NamedTuple, Optional, Tuple

from qattend.config import Settings, get_settings
from qattend.errors import ModelLoadError, RuntimeNotReadyError
from qattend.utils.logger import logger

# Detector-side score floor. The pipeline applies its own (higher) minimum
# confidence when selecting a face, so the detector only drops obvious noise.
DETECTOR_SCORE_FLOOR = 0.3


class RuntimeState(str, Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"


class FaceModels(NamedTuple):
    """
    The two inference models the pipeline needs.

    detector: ``detect(img, max_num=0) -> (bboxes[N, 5], kpss[N, 5, 2] | None)``
    embedder: ``get_feat(img) -> ndarray[1, D]`` with ``input_size == (w, h)``
    """
    detector: Any
    embedder: Any


ModelLoader = Callable[[Settings], FaceModels]


def load_insightface_models(settings: Settings) -> FaceModels:
    """Load the detector/recognizer pair from an InsightFace model pack (ONNX, CPU)."""
    from insightface.app import FaceAnalysis

    kwargs = {}
    if settings.face_model_root:
        kwargs["root"] = settings.face_model_root

    engine = FaceAnalysis(
        name=settings.face_model_pack,
        allowed_modules=["detection", "recognition"],
        providers=["CPUExecutionProvider"],
        **kwargs,
    )
    engine.prepare(ctx_id=-1, det_thresh=DETECTOR_SCORE_FLOOR, det_size=settings.face_det_size)

    detector = engine.models.get("detection")
    embedder = engine.models.get("recognition")
    if detector is None or embedder is None:
        missing = [name for name, m in (("detection", detector), ("recognition", embedder)) if m is None]
        raise ModelLoadError(f"Model pack '{settings.face_model_pack}' is missing: {', '.join(missing)}")
    return FaceModels(detector=detector, embedder=embedder)


def _model_name(model: Any) -> str:
    model_file = getattr(model, "model_file", None)
    if model_file:
        return os.path.basename(model_file)
    return type(model).__name__


class FaceModelRuntime:
    """
    Owns the loaded face detector and embedder.

    ``initialize()`` is idempotent and thread-safe. Until it succeeds, any
    attempt to reach the models raises ``RuntimeNotReadyError``.
    """

    def __init__(self, settings: Optional[Settings] = None, loader: Optional[ModelLoader] = None):
        self.settings = settings or get_settings()
        self._loader = loader or load_insightface_models
        self._models: Optional[FaceModels] = None
        self._lock = threading.Lock()

    @property
    def state(self) -> RuntimeState:
        return RuntimeState.READY if self._models is not None else RuntimeState.UNINITIALIZED

    def is_ready(self) -> bool:
        return self._models is not None

    def initialize(self) -> "FaceModelRuntime":
        if self._models is not None:
            return self

        with self._lock:
            if self._models is not None:
                return self

            logger.info(f"🔍 Loading face models ({self.settings.face_model_pack}, CPU)...")
            try:
                models = self._loader(self.settings)
            except ModelLoadError:
                raise
            except Exception as e:
                logger.error(f"❌ Face model load failed: {e}")
                raise ModelLoadError(f"Model loading failed: {e}") from e

            if models.detector is None or models.embedder is None:
                raise ModelLoadError("Model loader returned an incomplete model pair")

            self._models = models
            logger.info("✅ Face models ready")
        return self

    def _require_models(self) -> FaceModels:
        if self._models is None:
            raise RuntimeNotReadyError()
        return self._models

    @property
    def detector(self) -> Any:
        return self._require_models().detector

    @property
    def embedder(self) -> Any:
        return self._require_models().embedder

    @property
    def embedder_input_size(self) -> Tuple[int, int]:
        size = getattr(self.embedder, "input_size", None) or (112, 112)
        return int(size[0]), int(size[1])

    def metadata(self) -> Dict[str, Any]:
        """Static model information for diagnostics (safe to call before READY)."""
        info: Dict[str, Any] = {
            "state": self.state.value,
            "model_pack": self.settings.face_model_pack,
            "detector_input_size": list(self.settings.face_det_size),
        }
        if self._models is not None:
            embedder = self._models.embedder
            output_shape = getattr(embedder, "output_shape", None)
            dim = output_shape[-1] if output_shape else None
            info.update(
                detector=_model_name(self._models.detector),
                embedder=_model_name(embedder),
                embedder_input_size=list(self.embedder_input_size),
                embedding_dim=dim if isinstance(dim, int) else None,
            )
        return info


_runtime: Optional[FaceModelRuntime] = None


def get_runtime() -> FaceModelRuntime:
    """Process-wide runtime, created lazily (not initialized)."""
    global _runtime
    if _runtime is None:
        _runtime = FaceModelRuntime()
    return _runtime
