"""
Guest Upload Recorder
=====================

Stores files uploaded by anonymous visitors during the apply wizard.

Blob first, row second: when the upload fails nothing is recorded; when the
row insert fails after a successful upload the blob is left behind as an
orphan. Neither step is retried.
"""

import logging

from .errors import RecordError, StorageError
from .persistence import PersistenceClient
from .state import IncomingFile
from .storage import guest_key

logger = logging.getLogger(__name__)

SIGNED_URL_TTL = 60 * 60  # 1 hour


async def record_guest_upload(
    client: PersistenceClient,
    file: IncomingFile,
    session_id: str,
    case_type: str,
) -> str:
    """Upload `file` under the guest session and record it. Returns the blob path."""
    if not session_id:
        raise ValueError("session_id is required for guest uploads")

    file_path = guest_key(session_id, file.name)

    await client.upload(file_path, file.data, file.content_type)

    try:
        await client.insert("guest_documents", {
            "session_id": session_id,
            "name": file.name,
            "file_path": file_path,
            "file_type": file.content_type,
            "case_type": case_type,
        })
    except RecordError:
        logger.error(f"Guest document row insert failed; blob left at {file_path}")
        raise

    logger.info(f"Recorded guest upload {file.name} for session {session_id[:8]}")
    return file_path


async def remove_guest_upload(client: PersistenceClient, session_id: str, guest_document_id: str) -> bool:
    """Drop one guest document (row, then blob). False when it is not in the session."""
    rows = await client.select("guest_documents", id=guest_document_id, session_id=session_id)
    if not rows:
        return False

    await client.delete("guest_documents", id=guest_document_id, session_id=session_id)
    try:
        await client.remove([rows[0]["file_path"]])
    except StorageError as e:
        logger.warning(f"Guest blob removal failed for {rows[0]['file_path']}: {e}")
    return True


async def upload_document(client: PersistenceClient, path: str, file: IncomingFile) -> str:
    await client.upload(path, file.data, file.content_type)
    return path


async def get_signed_url(client: PersistenceClient, path: str, expires_in: int = SIGNED_URL_TTL) -> str:
    return await client.create_signed_url(path, expires_in)
