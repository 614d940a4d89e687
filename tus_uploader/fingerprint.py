"""
File fingerprinting for unique identification of uploads.

Uses MD5 hash + file size to generate the key under which an upload's
session is stored, enabling resume across process restarts.
"""

import hashlib
import os

from tus_uploader.source import ByteSource, FileByteSource


class Fingerprint:
    """
    Generate unique fingerprints for byte sources.

    Uses MD5 hash of the first block of content combined with the size to
    create an identifier for each upload. File sources also include their
    absolute path, so two identical files upload independently.
    """

    BLOCK_SIZE = 65536  # 64KB blocks for hashing

    def get_fingerprint(self, source: ByteSource) -> str:
        """
        Generate a unique fingerprint for a byte source.

        Args:
            source: The data to fingerprint

        Returns:
            str: Fingerprint in format "size:{size}--md5:{hash}", prefixed
            with "path:{path}--" for files
        """
        size = source.length()
        hasher = hashlib.md5()
        hasher.update(source.read(0, min(self.BLOCK_SIZE, size)))

        fingerprint = f"size:{size}--md5:{hasher.hexdigest()}"
        if isinstance(source, FileByteSource):
            fingerprint = f"path:{os.path.abspath(source.file_path)}--{fingerprint}"
        return fingerprint
