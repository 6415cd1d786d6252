"""
ZivaAds campaign alert & notification pipeline.

Classifies ad account failures, raises deduplicated threshold alerts on
campaign metrics and delivers alerts and scheduled reports over WhatsApp.
"""

from .pipeline import AlertPipeline, build_pipeline

__version__ = "1.0.0"

__all__ = ["AlertPipeline", "build_pipeline", "__version__"]
