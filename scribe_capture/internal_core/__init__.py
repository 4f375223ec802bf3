from .config import CaptureConfig, load_config

__all__ = ["CaptureConfig", "load_config"]
