"""Core — naming, deferred values, exports, collector, registries and orchestration."""
