"""
Release metadata lookups and file downloads with bounded timeouts.
"""

import json
import logging
import urllib.error
import urllib.request
from pathlib import Path

from orchestration import StepFailure

logger = logging.getLogger(__name__)

USER_AGENT = "kali-postinstall/1.0"
METADATA_TIMEOUT_SECS = 30
DOWNLOAD_TIMEOUT_SECS = 300
CHUNK_SIZE = 64 * 1024


class FetchError(StepFailure):
    """A remote lookup or download failed."""


def _request(url, accept=None):
    headers = {"User-Agent": USER_AGENT}
    if accept:
        headers["Accept"] = accept
    return urllib.request.Request(url, headers=headers)


def latest_release_asset_url(repo, matcher, timeout=METADATA_TIMEOUT_SECS, opener=urllib.request.urlopen):
    """
    Download URL of the first asset of `repo`'s latest GitHub release whose
    name satisfies `matcher` (a callable taking the asset name).
    """
    api_url = f"https://api.github.com/repos/{repo}/releases/latest"
    logger.info(f"Fetching latest release metadata for {repo}")
    try:
        with opener(_request(api_url, "application/vnd.github+json"), timeout=timeout) as resp:
            data = json.loads(resp.read())
    except (urllib.error.URLError, OSError, ValueError) as e:
        raise FetchError(f"Failed to fetch release metadata for {repo}: {e}") from e

    for asset in data.get("assets", []):
        name = asset.get("name", "")
        url = asset.get("browser_download_url", "")
        if url and matcher(name):
            logger.debug(f"Matched release asset {name}")
            return url

    tag = data.get("tag_name", "latest")
    raise FetchError(f"No matching asset in {repo} release {tag}")


def fetch(url, dest, timeout=DOWNLOAD_TIMEOUT_SECS, opener=urllib.request.urlopen):
    """Downloads `url` to `dest`; a partial file is removed on failure."""
    dest = Path(dest)
    logger.info(f"Downloading {url}")
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        with opener(_request(url), timeout=timeout) as resp, open(dest, "wb") as out:
            while True:
                chunk = resp.read(CHUNK_SIZE)
                if not chunk:
                    break
                out.write(chunk)
    except (urllib.error.URLError, OSError) as e:
        dest.unlink(missing_ok=True)
        raise FetchError(f"Failed to download {url}: {e}") from e
    logger.debug(f"Saved {dest} ({dest.stat().st_size} bytes)")
    return dest

