"""Unit tests for image buffers, output decoding, ModelRunner and the TorchScript loader."""

from __future__ import annotations

import io

import numpy as np
import pytest
import torch
from PIL import Image

from edgeml.core.exceptions import InferenceFailedError, InvalidInputError, ModelLoadError
from edgeml.inference.compute_backend import ComputeBackendOptimizer, StaticPlatformCapabilities
from edgeml.inference.predictions import BoundingBox, Prediction
from edgeml.inference.runners import (
    ImageBuffer,
    ModelRunner,
    TorchScriptModelLoader,
    decode_classification,
    decode_detection,
    decode_segmentation,
)
from edgeml.lifecycle.descriptor import ModelDescriptor, ModelType, SemanticVersion

# =============================================================================
# Helpers
# =============================================================================


def descriptor_for(
    model_type: ModelType,
    labels: tuple[str, ...] = (),
    input_shape: tuple[int, ...] = (1, 3, 4, 4),
) -> ModelDescriptor:
    return ModelDescriptor(
        id="tiny",
        name="Tiny",
        version=SemanticVersion(1, 0, 0),
        model_type=model_type,
        input_shape=input_shape,
        output_shape=(1,),
        byte_size=10,
        class_labels=labels,
    )


def rgb_image(height: int = 4, width: int = 4) -> ImageBuffer:
    return ImageBuffer(np.zeros((height, width, 3), dtype=np.uint8))


class FixedLogits(torch.nn.Module):
    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return torch.tensor([[1.0, 2.0, 3.0]])


class FixedDetections(torch.nn.Module):
    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return torch.tensor([[0.0, 0.0, 2.0, 2.0, 0.8, 1.0]])


class ChannelMean(torch.nn.Module):
    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return torch.mean(x, dim=[2, 3])


class Exploding(torch.nn.Module):
    def forward(self, x: torch.Tensor) -> torch.Tensor:
        raise RuntimeError("kernel crashed")


class BadShape(torch.nn.Module):
    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return torch.zeros(5)


@pytest.fixture
def optimizer() -> ComputeBackendOptimizer:
    return ComputeBackendOptimizer(StaticPlatformCapabilities())


@pytest.fixture
def runner(optimizer) -> ModelRunner:
    return ModelRunner(optimizer)


# =============================================================================
# ImageBuffer
# =============================================================================


class TestImageBuffer:
    def test_grayscale_gets_channel_axis(self):
        image = ImageBuffer(np.zeros((3, 5), dtype=np.uint8), color_space="L")
        assert (image.height, image.width, image.channels) == (3, 5, 1)

    def test_unknown_color_space_rejected(self):
        with pytest.raises(InvalidInputError):
            ImageBuffer(np.zeros((2, 2, 3), dtype=np.uint8), color_space="CMYK")

    def test_wrong_rank_rejected(self):
        with pytest.raises(InvalidInputError):
            ImageBuffer(np.zeros(12, dtype=np.uint8))

    def test_from_bytes_decodes_png(self):
        buffer = io.BytesIO()
        Image.new("RGB", (4, 3), (255, 0, 0)).save(buffer, format="PNG")

        image = ImageBuffer.from_bytes(buffer.getvalue())

        assert (image.height, image.width, image.channels) == (3, 4, 3)
        assert image.color_space == "RGB"
        assert image.pixels[0, 0].tolist() == [255, 0, 0]

    def test_from_bytes_rejects_garbage(self):
        with pytest.raises(InvalidInputError, match="Could not decode"):
            ImageBuffer.from_bytes(b"not an image")

    def test_to_tensor_matches_declared_shape(self):
        pixels = np.full((4, 4, 3), 255, dtype=np.uint8)
        tensor = ImageBuffer(pixels).to_tensor(descriptor_for(ModelType.classification()))
        assert tuple(tensor.shape) == (1, 3, 4, 4)
        assert float(tensor.max()) == pytest.approx(1.0)

    def test_to_tensor_without_batch_axis(self):
        descriptor = descriptor_for(ModelType.classification(), input_shape=(3, 4, 4))
        assert tuple(rgb_image().to_tensor(descriptor).shape) == (3, 4, 4)

    def test_bgr_is_flipped_to_rgb(self):
        pixels = np.zeros((4, 4, 3), dtype=np.uint8)
        pixels[:, :, 0] = 255
        tensor = ImageBuffer(pixels, color_space="BGR").to_tensor(
            descriptor_for(ModelType.classification())
        )
        assert float(tensor[0, 2].mean()) == pytest.approx(1.0)
        assert float(tensor[0, 0].mean()) == pytest.approx(0.0)

    def test_shape_mismatch_fails_inference(self):
        with pytest.raises(InferenceFailedError, match="model expects 3x4x4"):
            rgb_image(8, 8).to_tensor(descriptor_for(ModelType.classification()))


# =============================================================================
# Decoders
# =============================================================================


class TestDecoders:
    def test_classification_softmax(self):
        descriptor = descriptor_for(ModelType.classification(), ("cat", "dog", "fox"))
        predictions = decode_classification(torch.tensor([[0.5, 2.0, -1.0]]), descriptor)

        assert [p.label for p in predictions] == ["cat", "dog", "fox"]
        assert sum(p.confidence for p in predictions) == pytest.approx(1.0)
        assert max(predictions, key=lambda p: p.confidence).label == "dog"

    def test_classification_unknown_class_names(self):
        predictions = decode_classification([0.0, 0.0], descriptor_for(ModelType.classification()))
        assert [p.name for p in predictions] == ["class_0", "class_1"]

    @pytest.mark.parametrize(
        "output",
        [
            {
                "boxes": torch.tensor([[10.0, 5.0, 60.0, 30.0]]),
                "scores": torch.tensor([0.9]),
                "labels": torch.tensor([1]),
            },
            (torch.tensor([[10.0, 5.0, 60.0, 30.0]]), torch.tensor([0.9]), torch.tensor([1])),
            torch.tensor([[10.0, 5.0, 60.0, 30.0, 0.9, 1.0]]),
        ],
        ids=["dict", "tuple", "rows"],
    )
    def test_detection_formats(self, output):
        descriptor = descriptor_for(ModelType.detection(), ("person", "car"))

        [prediction] = decode_detection(output, descriptor, image_width=100, image_height=50)

        assert prediction.label == "car"
        assert prediction.class_id == 1
        assert prediction.confidence == pytest.approx(0.9)
        box = prediction.bounding_box
        assert (box.x, box.y) == pytest.approx((0.1, 0.1))
        assert (box.width, box.height) == pytest.approx((0.5, 0.5))

    def test_detection_boxes_are_clipped(self):
        descriptor = descriptor_for(ModelType.detection())
        output = torch.tensor([[-10.0, -10.0, 150.0, 40.0, 0.5, 0.0]])
        [prediction] = decode_detection(output, descriptor, image_width=100, image_height=50)
        box = prediction.bounding_box
        assert (box.x, box.y, box.width, box.height) == pytest.approx((0.0, 0.0, 1.0, 0.8))

    def test_detection_length_mismatch(self):
        output = {
            "boxes": torch.zeros((2, 4)),
            "scores": torch.tensor([0.9]),
            "labels": torch.tensor([0, 1]),
        }
        with pytest.raises(InferenceFailedError, match="lengths differ"):
            decode_detection(output, descriptor_for(ModelType.detection()), 10, 10)

    def test_segmentation_skips_background(self):
        descriptor = descriptor_for(ModelType.segmentation(), ("background", "road", "car"))
        logits = torch.zeros((1, 3, 4, 4))
        logits[0, 0] = 1.0
        logits[0, 1, :2, :2] = 5.0

        [road] = decode_segmentation(logits, descriptor)

        assert road.label == "road"
        assert road.metadata["coverage"] == pytest.approx(0.25)
        assert road.bounding_box == BoundingBox(0.0, 0.0, 0.5, 0.5)
        assert road.confidence > 0.5

    def test_segmentation_rejects_bad_rank(self):
        with pytest.raises(InferenceFailedError, match="segmentation logits"):
            decode_segmentation(torch.zeros((4, 4)), descriptor_for(ModelType.segmentation()))


# =============================================================================
# ModelRunner
# =============================================================================


class TestModelRunner:
    def test_classification_run(self, runner):
        descriptor = descriptor_for(ModelType.classification(), ("a", "b", "c"))
        predictions = runner.run(FixedLogits(), descriptor, rgb_image())
        assert [p.label for p in predictions] == ["a", "b", "c"]
        assert sum(p.confidence for p in predictions) == pytest.approx(1.0)

    def test_detection_run_uses_image_size(self, runner):
        descriptor = descriptor_for(ModelType.detection(), ("person", "car"))
        [prediction] = runner.run(FixedDetections(), descriptor, rgb_image())
        assert prediction.label == "car"
        assert prediction.bounding_box == BoundingBox(0.0, 0.0, 0.5, 0.5)

    def test_model_exception_becomes_inference_failure(self, runner):
        descriptor = descriptor_for(ModelType.classification())
        with pytest.raises(InferenceFailedError, match="kernel crashed"):
            runner.run(Exploding(), descriptor, rgb_image())

    def test_undecodable_output(self, runner):
        descriptor = descriptor_for(ModelType.detection())
        with pytest.raises(InferenceFailedError, match="could not decode output"):
            runner.run(BadShape(), descriptor, rgb_image())

    def test_input_mismatch(self, runner):
        descriptor = descriptor_for(ModelType.classification())
        with pytest.raises(InferenceFailedError):
            runner.run(FixedLogits(), descriptor, rgb_image(2, 2))

    def test_custom_decoder(self, runner):
        seen = []

        def decode_depth(output, descriptor, image):
            seen.append(tuple(output.shape))
            return [Prediction(label="near", confidence=float(output.mean()))]

        runner.register_decoder("depth", decode_depth)
        pixels = np.full((4, 4, 3), 255, dtype=np.uint8)

        [prediction] = runner.run(
            ChannelMean(), descriptor_for(ModelType.custom("depth")), ImageBuffer(pixels)
        )

        assert prediction.label == "near"
        assert prediction.confidence == pytest.approx(1.0)
        assert seen == [(1, 3)]

    def test_missing_custom_decoder(self, runner):
        with pytest.raises(InferenceFailedError, match="no decoder registered"):
            runner.run(ChannelMean(), descriptor_for(ModelType.custom("depth")), rgb_image())


# =============================================================================
# TorchScriptModelLoader
# =============================================================================


class TestTorchScriptModelLoader:
    def test_load_scripted_module(self, tmp_path, optimizer, runner):
        path = tmp_path / "tiny.pt"
        torch.jit.save(torch.jit.script(FixedLogits()), str(path))
        descriptor = descriptor_for(ModelType.classification(), ("a", "b", "c"))
        loader = TorchScriptModelLoader(optimizer)

        model = loader.load(descriptor, path)
        predictions = runner.run(model, descriptor, rgb_image())

        assert predictions[2].confidence > predictions[0].confidence
        loader.unload(model)

    def test_corrupt_artifact_raises_load_error(self, tmp_path, optimizer):
        path = tmp_path / "broken.pt"
        path.write_bytes(b"definitely not torchscript")

        with pytest.raises(ModelLoadError) as exc_info:
            TorchScriptModelLoader(optimizer).load(
                descriptor_for(ModelType.classification()), path
            )
        assert exc_info.value.model_key == "tiny@1.0.0"
