"""Model execution: image buffers, the TorchScript loader and output decoding.

The camera pipeline hands over an ImageBuffer whose size must already match
the model's declared input shape; no resizing or format negotiation happens
here. Raw model outputs are decoded into Predictions by switching on the
model type tag:

- classification: logits (C,) or (1, C) -> softmax score per class
- detection: {"boxes", "scores", "labels"} (or the same as a tuple) or an
  (N, 6) tensor of [x1, y1, x2, y2, score, class] in input pixels
- segmentation: per-class logits (K, H, W) or (1, K, H, W) -> one prediction
  per class present in the argmax mask, boxed by the mask's extent
- custom(name): a decoder registered under ``name``
"""

from __future__ import annotations

import io
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import numpy as np
import torch
from numpy.typing import NDArray
from PIL import Image

from edgeml.core.exceptions import InferenceFailedError, InvalidInputError, ModelLoadError
from edgeml.core.logging import get_logger, sanitize_error
from edgeml.inference.compute_backend import ComputeBackendOptimizer
from edgeml.inference.predictions import BoundingBox, Prediction
from edgeml.lifecycle.descriptor import ModelDescriptor, ModelKind

logger = get_logger(__name__)

SUPPORTED_COLOR_SPACES = ("RGB", "BGR", "L")


@dataclass(frozen=True, eq=False)
class ImageBuffer:
    """Raw HWC uint8 pixels plus their color space.

    Attributes:
        pixels: Array of shape (H, W, C) for RGB/BGR or (H, W) / (H, W, 1) for L
        color_space: "RGB", "BGR" or "L"
    """

    pixels: NDArray[np.uint8]
    color_space: str = "RGB"

    def __post_init__(self) -> None:
        if self.color_space not in SUPPORTED_COLOR_SPACES:
            raise InvalidInputError(
                f"Unsupported color space: {self.color_space}", field="color_space"
            )
        if self.pixels.ndim == 2:
            object.__setattr__(self, "pixels", self.pixels[:, :, None])
        if self.pixels.ndim != 3:
            raise InvalidInputError(
                f"Expected an (H, W, C) pixel array, got shape {self.pixels.shape}",
                field="pixels",
            )

    @classmethod
    def from_pil(cls, image: Image.Image) -> ImageBuffer:
        if image.mode not in ("RGB", "L"):
            image = image.convert("RGB")
        return cls(np.asarray(image, dtype=np.uint8), color_space=image.mode)

    @classmethod
    def from_bytes(cls, data: bytes) -> ImageBuffer:
        """Decode an encoded image (JPEG, PNG, ...)."""
        try:
            with Image.open(io.BytesIO(data)) as image:
                image.load()
                return cls.from_pil(image)
        except OSError as e:
            raise InvalidInputError(f"Could not decode image: {e}", field="data") from e

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def channels(self) -> int:
        return int(self.pixels.shape[2])

    def to_tensor(self, descriptor: ModelDescriptor) -> torch.Tensor:
        """Convert to a float tensor in [0, 1] matching the declared input shape.

        Accepts declared shapes (N, C, H, W) with N == 1 or (C, H, W).

        Raises:
            InferenceFailedError: If the buffer doesn't match the declared shape
        """
        shape = descriptor.input_shape
        if len(shape) == 4 and shape[0] == 1:
            _, channels, height, width = shape
        elif len(shape) == 3:
            channels, height, width = shape
        else:
            raise InferenceFailedError(
                descriptor.id, f"unsupported declared input shape {shape} for image input"
            )

        if (self.channels, self.height, self.width) != (channels, height, width):
            raise InferenceFailedError(
                descriptor.id,
                f"image is {self.channels}x{self.height}x{self.width} (CxHxW), "
                f"model expects {channels}x{height}x{width}",
            )

        pixels = self.pixels[:, :, ::-1] if self.color_space == "BGR" else self.pixels
        tensor = torch.from_numpy(np.ascontiguousarray(pixels)).permute(2, 0, 1).float() / 255.0
        return tensor.unsqueeze(0) if len(shape) == 4 else tensor


Decoder = Callable[[Any, ModelDescriptor, ImageBuffer], list[Prediction]]


class TorchScriptModelLoader:
    """Loads TorchScript artifacts onto the device chosen by the optimizer."""

    def __init__(self, optimizer: ComputeBackendOptimizer) -> None:
        self._optimizer = optimizer

    def load(self, descriptor: ModelDescriptor, path: Path) -> Any:
        device = self._optimizer.device_for(self._optimizer.backend_for(descriptor))
        try:
            model = torch.jit.load(str(path), map_location=device)
        except (RuntimeError, ValueError, OSError) as e:
            raise ModelLoadError(descriptor.cache_key, sanitize_error(e)) from e
        model.eval()
        logger.debug(f"Loaded TorchScript model {descriptor.cache_key} on {device}")
        return model

    def unload(self, model: Any) -> None:
        del model
        if torch.cuda.is_available():
            torch.cuda.empty_cache()


class ModelRunner:
    """Runs a loaded model on one image and decodes its output."""

    def __init__(
        self,
        optimizer: ComputeBackendOptimizer,
        custom_decoders: dict[str, Decoder] | None = None,
    ) -> None:
        self._optimizer = optimizer
        self._custom_decoders: dict[str, Decoder] = dict(custom_decoders or {})

    def register_decoder(self, name: str, decoder: Decoder) -> None:
        """Register the output decoder for ``custom(name)`` models."""
        self._custom_decoders[name] = decoder

    def run(self, model: Any, descriptor: ModelDescriptor, image: ImageBuffer) -> list[Prediction]:
        """Blocking; call from a worker thread.

        Raises:
            InferenceFailedError: If the input doesn't match, the model raises,
                or the output can't be decoded
        """
        device = self._optimizer.device_for(self._optimizer.backend_for(descriptor))
        tensor = image.to_tensor(descriptor).to(device)
        try:
            with torch.inference_mode():
                output = model(tensor)
        except Exception as e:
            raise InferenceFailedError(descriptor.id, sanitize_error(e)) from e

        try:
            return self.decode(output, descriptor, image)
        except InferenceFailedError:
            raise
        except (ValueError, IndexError, KeyError, TypeError, RuntimeError) as e:
            raise InferenceFailedError(
                descriptor.id, f"could not decode output: {sanitize_error(e)}"
            ) from e

    def decode(self, output: Any, descriptor: ModelDescriptor, image: ImageBuffer) -> list[Prediction]:
        match descriptor.model_type.kind:
            case ModelKind.CLASSIFICATION:
                return decode_classification(output, descriptor)
            case ModelKind.DETECTION:
                return decode_detection(output, descriptor, image.width, image.height)
            case ModelKind.SEGMENTATION:
                return decode_segmentation(output, descriptor)
            case ModelKind.CUSTOM:
                name = descriptor.model_type.custom_name or ""
                decoder = self._custom_decoders.get(name)
                if decoder is None:
                    raise InferenceFailedError(
                        descriptor.id, f"no decoder registered for custom model type '{name}'"
                    )
                return decoder(output, descriptor, image)


def _to_numpy(value: Any) -> NDArray[Any]:
    if isinstance(value, torch.Tensor):
        return value.detach().float().cpu().numpy()
    return np.asarray(value, dtype=np.float64)


def _softmax(logits: NDArray[Any], axis: int = -1) -> NDArray[Any]:
    shifted = logits - np.max(logits, axis=axis, keepdims=True)
    exp = np.exp(shifted)
    return exp / np.sum(exp, axis=axis, keepdims=True)


def decode_classification(output: Any, descriptor: ModelDescriptor) -> list[Prediction]:
    logits = _to_numpy(output).reshape(-1)
    probabilities = _softmax(logits)
    return [
        Prediction(label=descriptor.label_for(class_id), class_id=class_id, confidence=float(p))
        for class_id, p in enumerate(probabilities)
    ]


def decode_detection(
    output: Any, descriptor: ModelDescriptor, image_width: int, image_height: int
) -> list[Prediction]:
    if isinstance(output, dict):
        boxes, scores, labels = output["boxes"], output["scores"], output["labels"]
    elif isinstance(output, list | tuple) and len(output) == 3:
        boxes, scores, labels = output
    else:
        rows = _to_numpy(output).reshape(-1, 6)
        boxes, scores, labels = rows[:, :4], rows[:, 4], rows[:, 5]

    boxes_np = _to_numpy(boxes).reshape(-1, 4)
    scores_np = _to_numpy(scores).reshape(-1)
    labels_np = _to_numpy(labels).reshape(-1).astype(np.int64)
    if not len(boxes_np) == len(scores_np) == len(labels_np):
        raise InferenceFailedError(
            descriptor.id,
            f"detection output lengths differ: {len(boxes_np)} boxes, "
            f"{len(scores_np)} scores, {len(labels_np)} labels",
        )

    predictions: list[Prediction] = []
    for (x1, y1, x2, y2), score, class_id in zip(boxes_np, scores_np, labels_np, strict=True):
        box = BoundingBox.from_pixels(
            float(x1), float(y1), float(x2), float(y2), image_width, image_height
        ).clipped()
        predictions.append(
            Prediction(
                label=descriptor.label_for(int(class_id)),
                class_id=int(class_id),
                confidence=float(score),
                bounding_box=box,
            )
        )
    return predictions


def decode_segmentation(output: Any, descriptor: ModelDescriptor) -> list[Prediction]:
    logits = _to_numpy(output)
    if logits.ndim == 4:
        logits = logits[0]
    if logits.ndim != 3:
        raise InferenceFailedError(
            descriptor.id, f"expected (K, H, W) segmentation logits, got shape {logits.shape}"
        )

    probabilities = _softmax(logits, axis=0)
    mask = np.argmax(probabilities, axis=0)
    height, width = mask.shape
    predictions: list[Prediction] = []
    for class_id in np.unique(mask):
        label = descriptor.label_for(int(class_id))
        if label == "background":
            continue
        region = mask == class_id
        rows = np.flatnonzero(region.any(axis=1))
        cols = np.flatnonzero(region.any(axis=0))
        box = BoundingBox.from_xyxy(
            cols[0] / width, rows[0] / height, (cols[-1] + 1) / width, (rows[-1] + 1) / height
        )
        predictions.append(
            Prediction(
                label=label,
                class_id=int(class_id),
                confidence=float(probabilities[class_id][region].mean()),
                bounding_box=box,
                metadata={"coverage": round(float(region.mean()), 6)},
            )
        )
    return predictions
