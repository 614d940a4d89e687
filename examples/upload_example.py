#!/usr/bin/env python3
"""Example resumable upload with abort and resume."""

import logging
import os
import sys
import time

from tus_uploader import FileSessionStore, Upload, UploadConfig


def progress_callback(uploaded, total):
    """Display upload progress."""
    percent = (uploaded / total) * 100 if total else 100.0
    bar_length = 50
    filled = int(bar_length * uploaded / total) if total else bar_length
    bar = "=" * filled + "-" * (bar_length - filled)
    print(f"\rProgress: [{bar}] {percent:.1f}% ({uploaded}/{total} bytes)", end="")
    if uploaded == total:
        print()


def error_callback(error):
    """Report a failed attempt."""
    print(f"\nUpload failed: {error}")


def main():
    """Run the upload example."""
    if len(sys.argv) < 3:
        print("Usage: python upload_example.py <server_url> <file_path>")
        print("Example: python upload_example.py http://localhost:8080/files /path/to/file.bin")
        sys.exit(1)

    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    server_url = sys.argv[1]
    file_path = sys.argv[2]

    if not os.path.exists(file_path):
        print(f"Error: File not found: {file_path}")
        sys.exit(1)

    config = UploadConfig(
        endpoint=server_url,
        chunk_size=1024 * 1024,  # 1MB chunks
        metadata={"filename": os.path.basename(file_path)},
        max_retries=3,
    )

    # Sessions survive a restart of this script
    store = FileSessionStore(".tus_sessions.json")

    with Upload(
        file_path,
        config,
        on_progress=progress_callback,
        on_success=lambda url: print(f"Upload complete: {url}"),
        on_error=error_callback,
        store=store,
    ) as upload:
        print("Starting upload...")
        upload.start()

        # Interrupt the transfer, then pick it up again
        time.sleep(0.5)
        if upload.abort():
            upload.wait()
            print(f"\nAborted at {upload.offset}/{upload.total_size} bytes, resuming...")
            upload.start()

        url = upload.wait()
        stats = upload.stats
        if url:
            print(
                f"Uploaded {stats.uploaded_bytes - stats.resumed_from} bytes "
                f"in {stats.elapsed_time:.2f}s ({stats.upload_speed_mbps:.2f} MB/s)"
            )


if __name__ == "__main__":
    main()
