"""Run orchestration module.

This module handles:
- Building stale images with a bounded worker pool
- Binding and applying manifests in resolve order
- Collecting per-target outcomes into a run summary
"""
