"""Model lifecycle: descriptors, registry, storage, cache, downloads and updates.

Modules:
- descriptor: SemanticVersion, ModelType and the immutable ModelDescriptor
- catalog: remote model catalog (static and HTTP-backed)
- model_registry: locally registered descriptors with a JSON manifest
- storage: artifact store with temp paths and atomic commit
- transport: blob transport abstraction and the httpx implementation
- model_manager: ModelCache with LRU eviction under a byte budget
- download_service: DownloadCoordinator with bounded parallelism
- update_service: UpdateCoordinator with verify-then-swap installs
"""
