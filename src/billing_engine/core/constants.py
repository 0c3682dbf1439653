"""Application-wide constants.

This module defines constants used throughout the application
to avoid magic numbers and ensure consistency.
"""

# String field lengths
MAX_NAME_LENGTH = 255
MAX_SLUG_LENGTH = 63
MAX_PLAN_CODE_LENGTH = 50
MAX_COUPON_CODE_LENGTH = 50
MAX_INVOICE_NUMBER_LENGTH = 32
MAX_STATUS_LENGTH = 32
MAX_ERROR_CODE_LENGTH = 64
MAX_REFERENCE_LENGTH = 255
MAX_DESCRIPTION_LENGTH = 500
MAX_LEASE_HOLDER_LENGTH = 255

# Money columns
MONEY_PRECISION = 12
MONEY_SCALE = 2

# Invoice numbering
INVOICE_NUMBER_PREFIX = "INV"
INVOICE_SEQUENCE_WIDTH = 4

# Dunning defaults
DEFAULT_MAX_PAYMENT_RETRIES = 4
DEFAULT_RETRY_DAYS = [1, 3, 7, 14]
DEFAULT_REMINDER_DAYS = [-3, -1, 0, 3, 7]
DEFAULT_CANCEL_AFTER_DAYS = 30

# Tenant plans
FREE_PLAN_CODE = "FREE"

# Pagination defaults
DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100
