"""
Ownership transfer: reassign a textbook to the borrower and complete the request
as one indivisible unit.

Both writes run inside a single ``BEGIN IMMEDIATE`` transaction. If anything
fails between or during them the transaction is rolled back, so the textbook
owner and the request status are either both updated or both untouched.
"""
import logging
import sqlite3

from bookswap import catalog
from bookswap.db import db
from bookswap.errors import BookSwapError, PreconditionFailed, TransferFailed
from bookswap.models import RequestStatus

logger = logging.getLogger(__name__)


def _reassign_owner(c: sqlite3.Connection, textbook_id: int, new_owner_id: int) -> None:
    catalog.update_textbook_owner(c, textbook_id, new_owner_id)


def _mark_request_completed(c: sqlite3.Connection, request_id: int, textbook_id: int, new_owner_id: int) -> None:
    cur = c.execute(
        "UPDATE requests SET status=? WHERE id=? AND textbook_id=? AND borrower_id=? AND status=?",
        (
            RequestStatus.COMPLETED.value,
            request_id,
            textbook_id,
            new_owner_id,
            RequestStatus.APPROVED.value,
        ),
    )
    if cur.rowcount == 0:
        raise PreconditionFailed("Request is not approved for this textbook and borrower")


def transfer_ownership(request_id: int, textbook_id: int, new_owner_id: int) -> None:
    with db() as c:
        # Take the write lock before touching either row.
        c.execute("BEGIN IMMEDIATE")
        try:
            _reassign_owner(c, textbook_id, new_owner_id)
            _mark_request_completed(c, request_id, textbook_id, new_owner_id)
        except BookSwapError as e:
            logger.warning(f"Ownership transfer for request {request_id} rolled back: {e.message}")
            raise
        except Exception as e:
            logger.error(f"Ownership transfer for request {request_id} failed: {e}", exc_info=True)
            raise TransferFailed("Error transferring book ownership") from e
    logger.info(f"Textbook {textbook_id} transferred to user {new_owner_id} (request {request_id})")
