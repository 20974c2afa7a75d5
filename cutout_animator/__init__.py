"""
Package initialization for Cutout Animator source modules.
"""

# Import main classes for easy access
from .config import Config, load_config
from .chroma import ChromaKeySettings, CutoutImage, composite_forward, composite_reverse
from .presets import MotionPreset, MotionSpec, list_static_presets, suggest_presets
from .progress import ProgressEvent, Stage
from .worker_host import AnimationResult
from .pipeline import AnimationOptions, AnimationPipeline, generate_animation

__version__ = "1.0.0"
__author__ = "Cutout Animator"

__all__ = [
    'Config',
    'load_config',
    'ChromaKeySettings',
    'CutoutImage',
    'composite_forward',
    'composite_reverse',
    'MotionPreset',
    'MotionSpec',
    'list_static_presets',
    'suggest_presets',
    'ProgressEvent',
    'Stage',
    'AnimationResult',
    'AnimationOptions',
    'AnimationPipeline',
    'generate_animation',
]
