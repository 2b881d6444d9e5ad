"""Where registration photos go before they are encoded.

``upload`` persists a local file and returns a URL, ``fetch`` reads the
image back from that URL.
"""
import logging
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from uuid import uuid4

import cloudinary
import cloudinary.uploader
import requests

import config

logger = logging.getLogger(__name__)


class ImageStore(ABC):
    @abstractmethod
    def upload(self, path) -> str:
        """Persist the file at ``path`` and return its URL"""

    @abstractmethod
    def fetch(self, url: str) -> bytes:
        """Return the bytes of an image previously uploaded"""


class LocalImageStore(ImageStore):
    """Keeps images under a directory that the API serves at ``base_url``."""

    def __init__(self, root=config.FACES_DIR, base_url="/data/faces"):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.base_url = base_url.rstrip("/")

    def upload(self, path) -> str:
        suffix = Path(path).suffix or ".jpg"
        filename = f"{uuid4()}{suffix}"
        shutil.copyfile(path, self.root / filename)
        return f"{self.base_url}/{filename}"

    def fetch(self, url: str) -> bytes:
        if not url.startswith(self.base_url + "/"):
            raise ValueError(f"URL {url!r} does not belong to this store")
        # Only the basename is trusted
        return (self.root / Path(url).name).read_bytes()


class CloudinaryImageStore(ImageStore):
    def __init__(self, cloud_name, api_key, api_secret, folder=config.CLOUDINARY_FOLDER):
        if not (cloud_name and api_key and api_secret):
            raise ValueError("Cloudinary credentials are not configured")
        cloudinary.config(
            cloud_name=cloud_name,
            api_key=api_key,
            api_secret=api_secret,
            secure=True,
        )
        self.folder = folder

    def upload(self, path) -> str:
        result = cloudinary.uploader.upload(str(path), folder=self.folder)
        url = result["secure_url"]
        logger.debug("Uploaded %s to %s", path, url)
        return url

    def fetch(self, url: str) -> bytes:
        response = requests.get(url)
        response.raise_for_status()
        return response.content


def create_image_store(kind=config.IMAGE_STORE) -> ImageStore:
    if kind == "local":
        return LocalImageStore()
    if kind == "cloudinary":
        return CloudinaryImageStore(
            config.CLOUDINARY_CLOUD_NAME,
            config.CLOUDINARY_API_KEY,
            config.CLOUDINARY_API_SECRET,
        )
    raise ValueError(f"Unknown IMAGE_STORE {kind!r}, expected 'local' or 'cloudinary'")
