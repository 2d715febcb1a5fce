"""On-device model lifecycle and inference pipeline.

Sub-packages:
- core: configuration, logging, exceptions and Prometheus metrics
- lifecycle: model descriptors, local registry and storage, the model cache,
  download and update coordinators
- inference: prediction types, post-processing (confidence/top-K/NMS),
  compute-backend selection, model execution and batch orchestration

The composition root lives in ``edgeml.runtime``; every service is an
explicitly constructed instance owned by a ``ModelRuntime``.
"""

__version__ = "0.1.0"
