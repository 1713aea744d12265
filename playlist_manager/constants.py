"""
Defines application-wide constants, paths, and utility functions.

This module centralizes configuration for paths, URLs, and subprocess behavior,
adapting to whether the application is running from source or as a frozen executable.
"""

import sys
import subprocess
from pathlib import Path

# --- Application Path and Configuration Setup ---
if getattr(sys, 'frozen', False):
    # PyInstaller bundles keep managed binaries next to the executable.
    APP_PATH = Path(sys.executable).parent
else:
    # In development, the app path is the project root (parent of the package).
    APP_PATH = Path(__file__).resolve().parent.parent

USER_DATA_DIR: Path = Path.home() / '.playlist-manager'
CONFIG_FILE: Path = USER_DATA_DIR / 'config.json'
LOG_DIR: Path = USER_DATA_DIR / 'logs'
TEMP_DOWNLOAD_DIR: Path = USER_DATA_DIR / 'temp_downloads'
DATABASE_FILE: Path = USER_DATA_DIR / 'playlists.db'
BIN_DIR: Path = USER_DATA_DIR / 'bin'

# Avoid console windows on Windows.
SUBPROCESS_CREATION_FLAGS = subprocess.CREATE_NO_WINDOW if sys.platform == 'win32' else 0

# --- Job kinds and the tool that backs each of them ---
KIND_DOWNLOAD = 'download'
KIND_CONVERSION = 'conversion'
TOOL_NAMES = {
    KIND_DOWNLOAD: 'yt-dlp',
    KIND_CONVERSION: 'ffmpeg',
}

DEFAULT_MAX_CONCURRENT_JOBS = 2
DEFAULT_TERMINATION_GRACE = 5.0  # seconds
TEMP_FILE_SUFFIXES = {".part", ".ytdl", ".webm", ".temp"}

# --- Dependency download locations ---
YT_DLP_URLS = {
    'win32': 'https://github.com/yt-dlp/yt-dlp/releases/latest/download/yt-dlp.exe',
    'linux': 'https://github.com/yt-dlp/yt-dlp/releases/latest/download/yt-dlp',
    'darwin': 'https://github.com/yt-dlp/yt-dlp/releases/latest/download/yt-dlp_macos'
}
FFMPEG_URLS = {
    'win32': 'https://github.com/BtbN/FFmpeg-Builds/releases/download/latest/ffmpeg-master-latest-win64-gpl.zip',
    'linux': 'https://github.com/BtbN/FFmpeg-Builds/releases/download/latest/ffmpeg-master-latest-linux64-gpl.tar.xz',
    'darwin': 'https://github.com/BtbN/FFmpeg-Builds/releases/download/latest/ffmpeg-master-latest-macos64-gpl.zip'
}
REQUEST_HEADERS = {
    'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36'
}
REQUEST_TIMEOUTS = (10, 60)  # (connect_timeout, read_timeout)

# --- Application Update Checker ---
GITHUB_OWNER = 'playlist-manager'
GITHUB_REPO = 'playlist-manager'
GITHUB_API_URL = f'https://api.github.com/repos/{GITHUB_OWNER}/{GITHUB_REPO}/releases/latest'
