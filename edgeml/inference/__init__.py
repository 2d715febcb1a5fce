"""Inference pipeline: predictions, post-processing, backends and orchestration."""
