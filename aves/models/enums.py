"""
Python enums for persisted status and type columns.
Values are stored verbatim in the database.
"""

from enum import Enum


class JobStatus(str, Enum):
    PROCESSING = "processing"
    PENDING = "pending"
    FAILED = "failed"
    REVIEWED = "reviewed"


class ItemStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EDITED = "edited"


class AnnotationType(str, Enum):
    ANATOMICAL = "anatomical"
    BEHAVIORAL = "behavioral"
    COLOR = "color"
    PATTERN = "pattern"


class ReviewActionType(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    EDIT = "edit"
    BULK_APPROVE = "bulk_approve"


class FeedbackType(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    POSITION_FIX = "position_fix"


class RejectionCategory(str, Enum):
    """Categories offered by the reviewer reject dialog."""
    NOT_IN_IMAGE = "NOT_IN_IMAGE"
    TOO_SMALL = "TOO_SMALL"
    UNCLEAR_BLURRY = "UNCLEAR_BLURRY"
    OCCLUDED = "OCCLUDED"
    WRONG_IDENTIFICATION = "WRONG_IDENTIFICATION"
    WRONG_TERM = "WRONG_TERM"
    DUPLICATE = "DUPLICATE"
    NOT_REPRESENTATIVE = "NOT_REPRESENTATIVE"
    CONFUSING_FOR_LEARNERS = "CONFUSING_FOR_LEARNERS"


# Terminal item states that own a canonical annotation row
ACCEPTED_ITEM_STATUSES = (ItemStatus.APPROVED.value, ItemStatus.EDITED.value)
