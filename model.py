import csv
import io
import logging
import time
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np
import onnxruntime
from PIL import Image

import config

logger = logging.getLogger(__name__)


class PredictionError(Exception):
    """Base class for errors raised while serving predictions."""


class LoadError(PredictionError):
    """Label source could not be read or has no label column."""


class ModelLoadError(PredictionError):
    """Inference runtime could not load the model artifact."""


class DecodeError(PredictionError):
    """Uploaded bytes are not a decodable image."""


class InferenceContractError(PredictionError):
    """Model output does not contain the expected tensor."""


class LabelTable:
    """Ordered, de-duplicated class names indexed by model output position."""

    def __init__(self, labels: Sequence[str]):
        self._labels: Tuple[str, ...] = tuple(labels)

    def __len__(self) -> int:
        return len(self._labels)

    def __getitem__(self, index: int) -> str:
        return self._labels[index]

    def __iter__(self) -> Iterator[str]:
        return iter(self._labels)

    def __contains__(self, label: object) -> bool:
        return label in self._labels

    def __repr__(self) -> str:
        return f"LabelTable({list(self._labels)!r})"

    def lookup(self, index: int, default: str = config.UNKNOWN_LABEL) -> str:
        """Return the label at ``index`` or ``default`` when out of range."""
        if 0 <= index < len(self._labels):
            return self._labels[index]
        return default


def load_labels(source: Union[str, Path], column: str = config.LABEL_COLUMN) -> LabelTable:
    """
    Load class labels from a CSV file with a header row.

    Labels are kept in first-seen order and duplicates are dropped. Rows with
    an empty label are skipped.

    Raises:
        LoadError: if the file cannot be read or has no ``column`` header.
    """
    path = Path(source)
    labels: List[str] = []
    seen = set()

    try:
        with open(path, newline="", encoding="utf-8") as f:
            reader = csv.DictReader(f)
            if not reader.fieldnames or column not in reader.fieldnames:
                raise LoadError(f"Label source {path} has no '{column}' column")

            for row in reader:
                label = row.get(column)
                if label and label not in seen:
                    seen.add(label)
                    labels.append(label)

    except (OSError, UnicodeDecodeError, csv.Error) as e:
        logger.error(f"Error loading labels from {path}: {e}")
        raise LoadError(f"Could not read label source {path}: {e}") from e

    logger.info(f"Loaded {len(labels)} class labels from {path}")
    return LabelTable(labels)


class ImagePreprocessor:
    """Turns encoded image bytes into the model's input tensor."""

    def __init__(self, target_size: Tuple[int, int] = config.TARGET_SIZE,
                 channels: int = config.CHANNELS):
        self.target_size = target_size
        self.channels = channels

    def load_image(self, raw_bytes: bytes) -> Image.Image:
        """Decode raw bytes (JPEG, PNG, ...) into a Pillow image."""
        try:
            image = Image.open(io.BytesIO(raw_bytes))
            # Pillow decodes lazily; force it so truncated data fails here.
            image.load()
        except (OSError, ValueError, Image.DecompressionBombError) as e:
            raise DecodeError(f"Could not decode image: {e}") from e

        if image.mode == "I" or image.mode.startswith("I;16"):
            image = self._rescale_to_8bit(image)
        return image

    @staticmethod
    def _rescale_to_8bit(image: Image.Image) -> Image.Image:
        """Keep the high byte of 16-bit samples; ``convert("L")`` would clip them."""
        samples = np.asarray(image).astype(np.int64) >> 8
        return Image.fromarray(np.clip(samples, 0, 255).astype(np.uint8))

    def resize_image(self, image: Image.Image) -> Image.Image:
        """Resize to the target size with bilinear interpolation."""
        # Pillow resamples alpha images premultiplied, which zeroes the colour
        # of transparent pixels. Alpha is discarded by the grayscale step, so
        # drop it first.
        if image.mode in ("RGBA", "LA"):
            image = image.convert(image.mode[:-1])
        return image.resize(self.target_size, Image.BILINEAR)

    def to_grayscale(self, image: Image.Image) -> Image.Image:
        """Convert to 8-bit luminance, dropping any alpha channel."""
        # Always convert, even "L" input, so pixel access below sees one layout.
        return image.convert("L")

    def to_tensor(self, image: Image.Image) -> np.ndarray:
        """
        Pack luminance bytes into a zeroed buffer of ``width * height * channels``.

        Only the first ``width * height`` slots are written, in ``y * width + x``
        order. The remaining slots stay zero; the model was trained on input
        laid out this way.
        """
        width, height = image.size
        buffer = np.zeros(width * height * self.channels, dtype=np.float32)
        pixels = np.asarray(image, dtype=np.uint8).reshape(-1)
        buffer[:width * height] = pixels
        return buffer

    def normalize(self, buffer: np.ndarray) -> np.ndarray:
        """Map 0-255 byte values to [0, 1]."""
        return (buffer / np.float32(255.0)).astype(np.float32)

    def preprocess(self, raw_bytes: bytes) -> np.ndarray:
        """
        Complete preprocessing pipeline.

        Args:
            raw_bytes: Encoded image as uploaded

        Returns:
            float32 array with shape (1, height, width, channels)
        """
        image = self.load_image(raw_bytes)
        image = self.resize_image(image)
        image = self.to_grayscale(image)

        buffer = self.normalize(self.to_tensor(image))

        width, height = image.size
        return buffer.reshape(1, height, width, self.channels)


class ONNXModel:
    """Handles ONNX model loading and inference."""

    def __init__(self, model_path: Union[str, Path] = config.MODEL_PATH,
                 providers: Optional[List[str]] = None):
        self.model_path = str(model_path)
        self.providers = providers
        self.session = None
        self.input_names: List[str] = []
        self.output_names: List[str] = []
        self.input_shapes: List = []
        self.output_shapes: List = []
        self._load_model()

    def _load_model(self):
        """Load ONNX model and initialize session."""
        if not Path(self.model_path).exists():
            logger.error(f"ONNX model not found: {self.model_path}")
            raise ModelLoadError(f"ONNX model not found: {self.model_path}")

        logger.info(f"Loading ONNX model from: {self.model_path}")

        providers = self.providers
        if providers is None:
            providers = ['CPUExecutionProvider']
            if onnxruntime.get_device() == 'GPU':
                providers.insert(0, 'CUDAExecutionProvider')

        try:
            self.session = onnxruntime.InferenceSession(self.model_path, providers=providers)
        except Exception as e:
            logger.error(f"Error loading ONNX model: {e}")
            raise ModelLoadError(f"Could not load ONNX model {self.model_path}: {e}") from e

        inputs = self.session.get_inputs()
        outputs = self.session.get_outputs()
        self.input_names = [i.name for i in inputs]
        self.output_names = [o.name for o in outputs]
        self.input_shapes = [i.shape for i in inputs]
        self.output_shapes = [o.shape for o in outputs]

        logger.info("Model loaded successfully")
        logger.info(f"Inputs: {list(zip(self.input_names, self.input_shapes))}")
        logger.info(f"Outputs: {list(zip(self.output_names, self.output_shapes))}")
        logger.info(f"Providers: {self.session.get_providers()}")

    def run(self, feeds: Dict[str, np.ndarray]) -> Dict[str, np.ndarray]:
        """Run inference and return every model output keyed by name."""
        start_time = time.time()
        outputs = self.session.run(None, feeds)
        logger.debug(f"Inference completed in {time.time() - start_time:.3f}s")
        return dict(zip(self.output_names, outputs))

    def get_model_info(self) -> Dict:
        """Get model information."""
        return {
            'model_path': self.model_path,
            'input_names': self.input_names,
            'output_names': self.output_names,
            'input_shapes': self.input_shapes,
            'output_shapes': self.output_shapes,
            'providers': self.session.get_providers() if self.session else None
        }


class PredictionResult:
    """Label chosen for one request."""

    def __init__(self, predicted_class: str, predicted_class_index: int):
        self.predicted_class = predicted_class
        self.predicted_class_index = predicted_class_index

    def __eq__(self, other):
        if not isinstance(other, PredictionResult):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self):
        return (f"PredictionResult(predicted_class={self.predicted_class!r}, "
                f"predicted_class_index={self.predicted_class_index})")

    def to_dict(self) -> Dict:
        return {
            'predicted_class': self.predicted_class,
            'predicted_class_index': self.predicted_class_index
        }


def select_class_index(scores) -> int:
    """Index of the highest score; the lowest index wins a tie."""
    flat = np.asarray(scores).reshape(-1)
    if flat.size == 0:
        raise InferenceContractError("Model returned an empty output tensor")
    # np.argmax returns the first occurrence of the maximum.
    return int(np.argmax(flat))


class PredictionService:
    """Runs one prediction request: preprocess, infer, map to a label."""

    def __init__(self, engine, labels: LabelTable,
                 preprocessor: Optional[ImagePreprocessor] = None,
                 input_name: str = config.INPUT_NAME,
                 output_name: str = config.OUTPUT_NAME,
                 unknown_label: str = config.UNKNOWN_LABEL):
        self.engine = engine
        self.labels = labels
        self.preprocessor = preprocessor or ImagePreprocessor()
        self.input_name = input_name
        self.output_name = output_name
        self.unknown_label = unknown_label

    def predict(self, raw_bytes: bytes) -> PredictionResult:
        """
        Predict the class of an encoded image.

        Raises:
            DecodeError: if ``raw_bytes`` is not a supported image.
            InferenceContractError: if the model output lacks ``output_name``.
        """
        logger.info("Received request for prediction")
        start_time = time.time()

        # Failures propagate unlogged; the caller reports each one once.
        tensor = self.preprocessor.preprocess(raw_bytes)
        logger.info("Image processed")

        results = self.engine.run({self.input_name: tensor})
        output = results.get(self.output_name) if results else None
        if output is None:
            raise InferenceContractError("Model did not return an output tensor")

        index = select_class_index(output)
        logger.info(f"Predicted class index: {index}")

        label = self.labels.lookup(index, self.unknown_label)
        logger.info(f"Predicted class: {label} ({time.time() - start_time:.3f}s)")

        return PredictionResult(label, index)

    def get_service_info(self) -> Dict:
        """Get service information."""
        get_model_info = getattr(self.engine, 'get_model_info', None)
        return {
            'model_info': get_model_info() if get_model_info else None,
            'input_name': self.input_name,
            'output_name': self.output_name,
            'num_classes': len(self.labels)
        }
