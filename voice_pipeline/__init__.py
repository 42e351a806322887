"""Advanced voice processing pipeline"""

from .orchestrator import VoicePipeline

__version__ = "1.0.0"

__all__ = ["VoicePipeline"]
