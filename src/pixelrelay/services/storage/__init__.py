"""Object storage and result relay."""

from pixelrelay.services.storage.object_store import ObjectStore, S3ObjectStore
from pixelrelay.services.storage.relay import BlobRelay, RelayResult, get_image_extension

__all__ = ["ObjectStore", "S3ObjectStore", "BlobRelay", "RelayResult", "get_image_extension"]
