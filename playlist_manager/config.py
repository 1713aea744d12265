"""
Manages loading, saving, and validating the application configuration using Pydantic.

This module defines the configuration schema as a Pydantic model (`Settings`)
and provides a manager class (`ConfigManager`) to handle persistence to a JSON file.
"""

import json
import time
import re
import logging
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, ValidationError

from .constants import DEFAULT_MAX_CONCURRENT_JOBS, DEFAULT_TERMINATION_GRACE
from .jobs import QUALITY_PATTERN


class Settings(BaseModel):
    """
    Defines the application's configuration schema using Pydantic.

    This class provides type hints, default values, and validation logic for all
    configuration settings.
    """
    download_path: Path = Field(default_factory=lambda: Path.home() / 'Downloads' / 'Playlists')
    default_quality: str = 'best'
    default_format: str = 'mp4'
    default_preset: str = 'balanced'
    filename_template: str = '%(title).100s [%(id)s].%(ext)s'
    embed_thumbnail: bool = False
    embed_metadata: bool = True
    max_concurrent_jobs: int = Field(default=DEFAULT_MAX_CONCURRENT_JOBS, ge=1, le=20)
    termination_grace_seconds: float = Field(default=DEFAULT_TERMINATION_GRACE, gt=0, le=60)
    title_similarity_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    check_file_hashes: bool = True
    log_level: str = 'INFO'
    check_for_updates_on_startup: bool = True
    skipped_update_version: str = ''
    yt_dlp_path: Optional[Path] = None
    ffmpeg_path: Optional[Path] = None

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Ensures log_level is a valid logging level string."""
        upper_value = value.upper()
        allowed_levels: List[str] = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if upper_value not in allowed_levels:
            raise ValueError(f"'{value}' is not a valid log level. Must be one of {allowed_levels}.")
        return upper_value

    @field_validator('default_quality')
    @classmethod
    def validate_default_quality(cls, value: str) -> str:
        if not QUALITY_PATTERN.match(value.strip()):
            raise ValueError("Quality must be 'best', 'audio', or a height such as '1080p'.")
        return value.strip().lower()

    @field_validator('filename_template')
    @classmethod
    def validate_filename_template(cls, value: str) -> str:
        """
        Validates the yt-dlp filename template.

        Raises:
            ValueError: If the template is invalid.
        """
        is_invalid = (
            not value or
            not re.search(r'%\((?:title|id)\)', value) or
            '/' in value or '\\' in value or '..' in value or
            Path(value).is_absolute()
        )
        if is_invalid:
            raise ValueError("Filename template is invalid. It must include %(title)s or %(id)s and cannot contain path separators.")
        return value


class ConfigManager:
    """Handles loading and saving the application configuration file."""
    def __init__(self, config_path: Path):
        """
        Initializes the ConfigManager.

        Args:
            config_path: The path to the configuration file.
        """
        self.config_path = config_path
        self.logger = logging.getLogger(__name__)
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> Settings:
        """
        Loads config from file, merges with defaults, validates, and returns it.

        If the file doesn't exist, is invalid, or an error occurs, a default
        configuration is returned. Invalid files are backed up.

        Returns:
            A validated Settings object.
        """
        if not self.config_path.exists():
            self.logger.info("Config file not found. Creating with default settings.")
            default_settings = Settings()
            self.save(default_settings)
            return default_settings

        try:
            config_data = json.loads(self.config_path.read_text(encoding='utf-8'))
            return Settings.model_validate(config_data)
        except (ValidationError, json.JSONDecodeError, IOError) as e:
            self.logger.error(f"Error loading {self.config_path}: {e}. Backing up and using defaults.")
            try:
                backup_path = self.config_path.with_suffix(f".{int(time.time())}.bak")
                self.config_path.rename(backup_path)
                self.logger.info(f"Backed up corrupted config to {backup_path}")
            except IOError as backup_e:
                self.logger.error(f"Could not back up corrupted config file: {backup_e}")
            return Settings()

    def save(self, settings: Settings):
        """
        Saves the provided settings object to the config file.

        Args:
            settings: The Settings object to save.
        """
        try:
            self.config_path.write_text(settings.model_dump_json(indent=4), encoding='utf-8')
        except IOError as e:
            self.logger.error(f"Error saving config file to {self.config_path}: {e}")
