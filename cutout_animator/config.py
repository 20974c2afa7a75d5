"""
Configuration management for Cutout Animator.

This module handles loading and validation of the remote service settings,
chroma-key thresholds and encoding defaults used by the animation pipeline.
"""

import os
import logging
from pathlib import Path
from typing import Dict, Any, Optional
import yaml
from dataclasses import dataclass

from .chroma import ChromaKeySettings
from .errors import ConfigError

logger = logging.getLogger(__name__)

API_KEY_ENV_VAR = "FAL_KEY"

DEFAULT_NEGATIVE_PROMPT = (
    "distortion, morphing, deformation, extra limbs, extra body parts, "
    "disfigured, mutated, ugly, blurry, low quality, watermark, text, "
    "unrealistic proportions, melting, stretching, warping, "
    "duplicate, clone, split body, merged body parts, "
    "background change, new background, scenery, environment, landscape, "
    "background replacement, color shift"
)


@dataclass
class Config:
    """Configuration class for Cutout Animator."""

    # Remote service credentials and endpoints
    api_key: Optional[str] = None
    upload_init_url: str = "https://rest.fal.ai/storage/upload/initiate?storage_type=fal-cdn-v3"
    queue_base_url: str = "https://queue.fal.run"
    model_id: str = "fal-ai/wan/v2.2-a14b/image-to-video"
    request_timeout: float = 60.0

    # Generation parameters
    negative_prompt: str = DEFAULT_NEGATIVE_PROMPT
    resolution: str = "480p"
    aspect_ratio: str = "1:1"
    num_inference_steps: int = 27
    guidance_scale: float = 3.5
    enable_safety_checker: bool = False

    # Polling policy (seconds / poll count)
    poll_initial_delay: float = 2.0
    poll_interval: float = 1.0
    poll_error_backoff: float = 2.0
    max_polls: int = 120

    # Chroma key (magenta keeps green and blue subjects intact)
    key_color: tuple = (255, 0, 255)
    strong_threshold: int = 80
    strong_level: int = 150
    weak_threshold: int = 40
    weak_level: int = 100

    # Encoding
    default_fps: int = 16
    default_loops: int = 0
    max_duration_seconds: float = 4.0
    max_custom_frames: int = 65
    worker_timeout: Optional[float] = 300.0
    # Frames must match the uploaded image size; disable for services that rescale
    require_matching_size: bool = True

    # Vision preset suggestions
    ollama_url: str = "http://127.0.0.1:11434"
    ollama_model: str = "minicpm-v"
    vision_max_dim: int = 384

    def __post_init__(self):
        """Post-initialization validation and type conversion."""
        # YAML hands sequences back as lists
        if isinstance(self.key_color, list):
            self.key_color = tuple(self.key_color)
        if self.api_key is not None and not str(self.api_key).strip():
            self.api_key = None

        self.validate()

    def validate(self):
        """Validate configuration parameters."""
        if len(self.key_color) != 3 or any(not 0 <= int(c) <= 255 for c in self.key_color):
            raise ValueError(f"key_color must be three 0-255 values, got {self.key_color}")

        if self.weak_threshold >= self.strong_threshold:
            raise ValueError(
                f"weak_threshold ({self.weak_threshold}) must be below "
                f"strong_threshold ({self.strong_threshold})"
            )
        if self.weak_level > self.strong_level:
            raise ValueError(
                f"weak_level ({self.weak_level}) must not exceed strong_level ({self.strong_level})"
            )

        if self.max_polls <= 0:
            raise ValueError("max_polls must be positive")
        if self.poll_interval < 0 or self.poll_error_backoff < 0 or self.poll_initial_delay < 0:
            raise ValueError("Polling delays must not be negative")

        if self.default_fps <= 0:
            raise ValueError("default_fps must be positive")
        if self.default_loops < 0:
            raise ValueError("default_loops must not be negative")
        if self.max_duration_seconds <= 0:
            raise ValueError("max_duration_seconds must be positive")

    def require_api_key(self) -> str:
        """Return the API key or fail before any network traffic happens."""
        if not self.api_key:
            raise ConfigError(
                f"No fal.ai API key configured. Set {API_KEY_ENV_VAR} or api_key in the config file."
            )
        return self.api_key

    def chroma_settings(self):
        """Build the chroma-key settings described by this config."""
        return ChromaKeySettings(
            key_color=tuple(int(c) for c in self.key_color),
            strong_threshold=self.strong_threshold,
            strong_level=self.strong_level,
            weak_threshold=self.weak_threshold,
            weak_level=self.weak_level,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary for serialization."""
        return {
            "api_key": self.api_key,
            "upload_init_url": self.upload_init_url,
            "queue_base_url": self.queue_base_url,
            "model_id": self.model_id,
            "request_timeout": self.request_timeout,
            "negative_prompt": self.negative_prompt,
            "resolution": self.resolution,
            "aspect_ratio": self.aspect_ratio,
            "num_inference_steps": self.num_inference_steps,
            "guidance_scale": self.guidance_scale,
            "enable_safety_checker": self.enable_safety_checker,
            "poll_initial_delay": self.poll_initial_delay,
            "poll_interval": self.poll_interval,
            "poll_error_backoff": self.poll_error_backoff,
            "max_polls": self.max_polls,
            "key_color": list(self.key_color),
            "strong_threshold": self.strong_threshold,
            "strong_level": self.strong_level,
            "weak_threshold": self.weak_threshold,
            "weak_level": self.weak_level,
            "default_fps": self.default_fps,
            "default_loops": self.default_loops,
            "max_duration_seconds": self.max_duration_seconds,
            "max_custom_frames": self.max_custom_frames,
            "worker_timeout": self.worker_timeout,
            "require_matching_size": self.require_matching_size,
            "ollama_url": self.ollama_url,
            "ollama_model": self.ollama_model,
            "vision_max_dim": self.vision_max_dim,
        }


def load_config(config_path: str) -> Config:
    """Load configuration from a YAML file, with the API key overridable from the environment."""
    config_file = Path(config_path)

    if not config_file.exists():
        # Create default config file
        default_config = Config(api_key=os.environ.get(API_KEY_ENV_VAR))
        save_config(default_config, config_path, include_secrets=False)
        logger.info(f"Created default configuration file: {config_path}")
        return default_config

    with open(config_file, 'r') as f:
        config_dict = yaml.safe_load(f) or {}

    if not isinstance(config_dict, dict):
        raise ValueError(f"Configuration file {config_path} must contain a mapping")

    unknown = sorted(set(config_dict) - set(Config.__dataclass_fields__))
    if unknown:
        logger.warning(f"Ignoring unknown configuration keys: {unknown}")
        for key in unknown:
            config_dict.pop(key)

    env_key = os.environ.get(API_KEY_ENV_VAR)
    if env_key:
        config_dict['api_key'] = env_key

    return Config(**config_dict)


def save_config(config: Config, config_path: str, include_secrets: bool = True):
    """Save configuration to YAML file."""
    config_dict = config.to_dict()
    if not include_secrets:
        config_dict['api_key'] = None

    with open(config_path, 'w') as f:
        yaml.dump(config_dict, f, default_flow_style=False, indent=2)


def create_example_config() -> str:
    """Create an example configuration file."""
    example_config = """# Cutout Animator Configuration
# The API key can also be supplied through the FAL_KEY environment variable

api_key: null

# Remote service
queue_base_url: "https://queue.fal.run"
model_id: "fal-ai/wan/v2.2-a14b/image-to-video"
resolution: "480p"
num_inference_steps: 27
guidance_scale: 3.5

# Polling (1s interval, 120 polls = about 2 minutes)
poll_interval: 1.0
poll_error_backoff: 2.0
max_polls: 120

# Chroma key background and soft-edge band
key_color: [255, 0, 255]   # Magenta, rare in real subjects
strong_threshold: 80       # Keyness above this is fully transparent
strong_level: 150
weak_threshold: 40         # Keyness above this is partially transparent
weak_level: 100

# Encoding
default_fps: 16
default_loops: 0           # 0 = loop forever
max_duration_seconds: 4.0

# Optional AI preset suggestions through Ollama
ollama_url: "http://127.0.0.1:11434"
ollama_model: "minicpm-v"
"""

    return example_config


if __name__ == "__main__":
    # Generate example config when run directly
    example = create_example_config()
    with open("config_example.yaml", "w") as f:
        f.write(example)
