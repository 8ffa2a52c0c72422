"""
Coffee leaf disease diagnosis - prediction orchestration and model lifecycle.

Combines an image classifier with a symptom classifier behind a versioned
model registry, a two-tier result cache and a Redis-stream request queue.
"""

__version__ = "0.1.0"
