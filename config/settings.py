"""
Configuration management for the Parley voice agent.

Loads settings from ~/.parley/config.toml with fallback to defaults.
API keys are read from the environment and never written to disk.
"""
import os
import copy
import logging
import tomllib
from pathlib import Path
from typing import Dict, Any, Optional
from dataclasses import dataclass, asdict

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".parley" / "config.toml"

# Default configuration values
DEFAULT_CONFIG = {
    "company": {
        "name": "Resonira Technologies",
        "description": "",
        "assistant_name": "Jessi"
    },
    "audio": {
        "sample_rate": 16000,
        "channels": 1,
        "chunk_size_ms": 100
    },
    "vad": {
        "profile": "desktop",
        "adaptive_thresholds": True,
        "calibration_ms": 1000,
        "energy_threshold": 0.0,  # 0 = use profile default
        "speech_frequency_threshold": 0.0,
        "silence_threshold_ms": 0,
        "min_speech_duration_ms": 0
    },
    "speech": {
        "language_code": "en-US",
        "model": "latest_long",
        "use_enhanced": True,
        "token_endpoint": "",
        "stream_url": "",
        "local_model": "small.en"
    },
    "llm": {
        "model": "llama-3.1-8b-instant",
        "temperature": 0.8,
        "max_tokens": 1024,
        "top_p": 0.9,
        "proxy_url": "",
        "direct_url": "https://api.groq.com/openai/v1/chat/completions",
        "system_prompt": ""
    },
    "tts": {
        "url": "https://api.sarvam.ai/v1/text-to-speech",
        "language_code": "en-IN",
        "voice_name": "sarvam:en:female",
        "pitch": 0.0,
        "speaking_rate": 1.0
    },
    "conversation": {
        "max_turns": 10,
        "min_utterance_bytes": 5000,
        "char_delay_ms": 60
    },
    "features": {
        "enable_streaming": False,
        "enable_barge_in": True,
        "enable_local_fallback": True,
        "audio_enabled": True
    },
    "knowledge_base": {
        "enabled": False,
        "path": "~/.parley/knowledge.json"
    },
    "ui": {
        "verbose": False,
        "quiet": False
    }
}


@dataclass
class AgentConfig:
    """Main configuration class for the agent."""
    company: Dict[str, Any]
    audio: Dict[str, Any]
    vad: Dict[str, Any]
    speech: Dict[str, Any]
    llm: Dict[str, Any]
    tts: Dict[str, Any]
    conversation: Dict[str, Any]
    features: Dict[str, Any]
    knowledge_base: Dict[str, Any]
    ui: Dict[str, Any]

    @property
    def groq_api_key(self) -> Optional[str]:
        return os.environ.get("GROQ_API_KEY") or None

    @property
    def sarvam_api_key(self) -> Optional[str]:
        return os.environ.get("SARVAM_API_KEY") or None

    @classmethod
    def load(cls, config_path: Optional[str] = None) -> 'AgentConfig':
        """
        Load configuration from file with fallback to defaults.

        Args:
            config_path: Path to config file (defaults to ~/.parley/config.toml)

        Returns:
            AgentConfig instance with merged settings
        """
        config_path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH

        config_data = copy.deepcopy(DEFAULT_CONFIG)

        if config_path.exists():
            try:
                with open(config_path, "rb") as f:
                    user_config = tomllib.load(f)

                config_data = _deep_merge(config_data, user_config)
                logger.info(f"Loaded configuration from {config_path}")

            except (OSError, tomllib.TOMLDecodeError) as e:
                logger.warning(f"Failed to load config from {config_path}: {e}")
                logger.info("Using default configuration")
        else:
            logger.info(f"Config file not found at {config_path}, using defaults")

            try:
                config_path.parent.mkdir(parents=True, exist_ok=True)
                _create_example_config(config_path)
            except OSError as e:
                logger.warning(f"Could not create example config: {e}")

        known = {key: config_data[key] for key in DEFAULT_CONFIG}
        unknown = set(config_data) - set(DEFAULT_CONFIG)
        if unknown:
            logger.warning(f"Ignoring unknown config sections: {sorted(unknown)}")
        return cls(**known)

    def save(self, config_path: Optional[str] = None) -> bool:
        """
        Save current configuration to file.

        Returns:
            True if saved successfully, False otherwise
        """
        config_path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH

        try:
            config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(config_path, "w") as f:
                f.write(_dict_to_toml(asdict(self)))

            logger.info(f"Configuration saved to {config_path}")
            return True

        except OSError as e:
            logger.error(f"Failed to save config to {config_path}: {e}")
            return False


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two dictionaries."""
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def _create_example_config(config_path: Path) -> None:
    """Create an example configuration file."""
    header = """# Parley Voice Agent Configuration
# This file was auto-generated with default values.
# API keys are read from GROQ_API_KEY and SARVAM_API_KEY, not from this file.

"""

    with open(config_path, "w") as f:
        f.write(header + _dict_to_toml(DEFAULT_CONFIG))

    logger.info(f"Created example config at {config_path}")


def _toml_value(value: Any) -> str:
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(_toml_value(v) for v in value) + "]"
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _dict_to_toml(data: Dict[str, Any]) -> str:
    """Convert a two-level dictionary of sections to TOML."""
    lines = []

    for key, value in data.items():
        if isinstance(value, dict):
            lines.append(f"[{key}]")
            for sub_key, sub_value in value.items():
                lines.append(f"{sub_key} = {_toml_value(sub_value)}")
            lines.append("")
        else:
            lines.append(f"{key} = {_toml_value(value)}")

    return "\n".join(lines)


def load_config(config_path: Optional[str] = None) -> AgentConfig:
    """Load agent configuration from file or defaults."""
    return AgentConfig.load(config_path)
