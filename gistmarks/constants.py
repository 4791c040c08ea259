"""
Constants for Gistmarks.

Several of these are also exposed through the config system.
"""

# Remote document defaults
DEFAULT_FILENAME = "bookmarks.md"
DEFAULT_DESCRIPTION = "Gistmarks - Bookmark Collection"

# GitHub API
GITHUB_API_URL = "https://api.github.com"
GITHUB_API_VERSION = "2022-11-28"
GITHUB_ACCEPT = "application/vnd.github+json"
GIST_LIST_PAGE_SIZE = 100

# Network timeouts (in seconds)
DEFAULT_REQUEST_TIMEOUT = 10

# Change detection
DEFAULT_POLL_INTERVAL_MS = 10000

# Document format
ROOT_VERSION = 1
EMPTY_DOCUMENT_TITLE = "# 📚 Gistmarks"
EMPTY_DOCUMENT_MESSAGE = "Your bookmark collection is empty. Start adding bookmarks!"
UNTITLED_CATEGORY = "Untitled Category"
UNTITLED_BUNDLE = "Untitled Bundle"

# Local state
DEFAULT_STATE_FILE = "~/.config/gistmarks/state.json"
