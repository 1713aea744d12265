"""Checks GitHub for newer releases of the application."""
import logging
from typing import Any, Dict, Optional

import requests
from packaging.version import parse, InvalidVersion

from .constants import GITHUB_API_URL, REQUEST_HEADERS, REQUEST_TIMEOUTS
from ._version import __version__


class AppUpdater:
    """Compares the running version against the latest GitHub release."""

    def __init__(self, skipped_version: str = '', current_version: str = __version__,
                 api_url: str = GITHUB_API_URL):
        """
        Initializes the AppUpdater.

        Args:
            skipped_version: A release the user chose not to be told about again.
            current_version: The version to compare against.
            api_url: The GitHub 'latest release' endpoint.
        """
        self.skipped_version = skipped_version
        self.current_version = current_version
        self.api_url = api_url
        self.logger = logging.getLogger(__name__)

    def evaluate_release(self, data: Any) -> Optional[Dict[str, str]]:
        """
        Returns {'version', 'url'} if `data` describes a newer, unskipped release.

        Args:
            data: The decoded JSON body of the GitHub release API.
        """
        if not isinstance(data, dict):
            self.logger.warning(f"Unexpected API response type: {type(data)}")
            return None

        tag = data.get('tag_name')
        release_url = data.get('html_url')
        if not tag or not release_url:
            self.logger.warning("Could not find version tag or URL in API response.")
            return None

        latest_version_str = tag[1:] if tag.startswith('v') else tag
        if latest_version_str == self.skipped_version:
            self.logger.info(f"Update for version {latest_version_str} has been skipped by the user.")
            return None

        try:
            current_version, latest_version = parse(self.current_version), parse(latest_version_str)
        except InvalidVersion as e:
            self.logger.warning(f"Could not parse version '{latest_version_str}': {e}")
            return None

        self.logger.info(f"Current version: {current_version}, Latest version found: {latest_version}")
        if latest_version > current_version:
            return {'version': str(latest_version), 'url': release_url}
        return None

    def check_for_updates(self) -> Optional[Dict[str, str]]:
        """
        Fetches the latest release. Blocking; run it in a worker thread.

        Network and decoding failures are logged and reported as "no update".
        """
        self.logger.info("Checking for application updates...")
        try:
            response = requests.get(self.api_url, headers=REQUEST_HEADERS, timeout=REQUEST_TIMEOUTS)
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.RequestException as e:
            status_code = f" (Status: {e.response.status_code})" if getattr(e, 'response', None) is not None else ""
            self.logger.warning(f"Failed to check for updates (network error): {e}{status_code}")
            return None
        except ValueError as e:
            self.logger.warning(f"Could not parse API response from GitHub: {e}")
            return None

        update = self.evaluate_release(data)
        if update:
            self.logger.info(f"New version available: {update['version']}")
        return update
