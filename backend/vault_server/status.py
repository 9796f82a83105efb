"""
Status code table.

Response codes are 4-digit integers partitioned by range:
    1000-1999  success
    2000-2999  warnings
    3000-3999  request / session validation failures
    4000-4999  object level errors
    5000-5999  server errors

Invariants:
    - Every code maps to exactly one (http_status, message) pair
    - Unknown codes are logged and answered with 503 "Unknown Reason"
"""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)

HTTP_OK = 200
HTTP_BAD_REQUEST = 400
HTTP_CONFLICT = 409
HTTP_INTERNAL_ERROR = 500
HTTP_UNAVAILABLE = 503

UNKNOWN_REASON = "Unknown Reason"

STATUS_CODES: dict[int, tuple[int, str]] = {
    # Success
    1000: (HTTP_OK, "OK"),
    1001: (HTTP_OK, "Please Login!"),
    1002: (HTTP_OK, "Logged Out!"),
    1003: (HTTP_OK, "Logged In!"),
    1099: (HTTP_OK, "Contact System Administrator."),
    # Warnings
    2001: (HTTP_OK, "There was nothing to change!"),
    2490: (HTTP_OK, "Failed to Send Invitation. Retry!"),
    # Request / session validation
    3000: (HTTP_BAD_REQUEST, "Not Logged In!"),
    3001: (HTTP_BAD_REQUEST, "Invalid Login Credentials"),
    3002: (HTTP_BAD_REQUEST, "Session User Invalid"),
    3003: (HTTP_BAD_REQUEST, "User Session Active"),
    3004: (HTTP_BAD_REQUEST, "Not a Registered User Session"),
    3100: (HTTP_BAD_REQUEST, "Missing or Invalid API Parameters"),
    3200: (HTTP_BAD_REQUEST, "Missing or Invalid Form Parameters"),
    3201: (HTTP_BAD_REQUEST, "No Valid Form Parameters Passed"),
    3300: (HTTP_BAD_REQUEST, "Missing or Invalid URL Parameters"),
    3301: (HTTP_BAD_REQUEST, "No Valid URL Parameters Passed"),
    # Object level
    4000: (HTTP_BAD_REQUEST, "User does not exist"),
    4001: (HTTP_BAD_REQUEST, "User account inactive"),
    4002: (HTTP_BAD_REQUEST, "User account disabled"),
    4003: (HTTP_BAD_REQUEST, "User Access Denied"),
    4004: (HTTP_BAD_REQUEST, "Action Not Permitted on SELF"),
    4010: (HTTP_BAD_REQUEST, "Alias already Exists"),
    4011: (HTTP_BAD_REQUEST, "Email already registered"),
    4050: (HTTP_BAD_REQUEST, "User already registered with object"),
    4051: (HTTP_BAD_REQUEST, "User not registered with object"),
    4052: (HTTP_BAD_REQUEST, "Access Denied"),
    4053: (HTTP_BAD_REQUEST, "User Access Blocked"),
    4054: (HTTP_BAD_REQUEST, "User in Read Only Mode"),
    4060: (HTTP_BAD_REQUEST, "Last Objects User"),
    4061: (HTTP_BAD_REQUEST, "Last Objects Roles Manager"),
    4062: (HTTP_BAD_REQUEST, "Last Objects Invitation Manager"),
    4099: (HTTP_BAD_REQUEST, "Access Denied"),
    4100: (HTTP_BAD_REQUEST, "Organization does not exist"),
    4101: (HTTP_BAD_REQUEST, "Access Denied"),
    4103: (HTTP_BAD_REQUEST, "Organization Access Blocked"),
    4200: (HTTP_BAD_REQUEST, "Store does not exist"),
    4201: (HTTP_BAD_REQUEST, "Access Denied"),
    4202: (HTTP_BAD_REQUEST, "Store is Closed"),
    4203: (HTTP_BAD_REQUEST, "Store Access Blocked"),
    4204: (HTTP_BAD_REQUEST, "Store Read Only Mode"),
    4250: (HTTP_BAD_REQUEST, "Store Object does not exist"),
    4251: (HTTP_BAD_REQUEST, "Store Object is not a Folder"),
    4252: (HTTP_BAD_REQUEST, "Store Object too big"),
    4300: (HTTP_BAD_REQUEST, "Invitation Accept, requires Session by the invitee!"),
    4301: (HTTP_BAD_REQUEST, "Invitation Accept, requires Session and Password by the invitee!"),
    4302: (HTTP_BAD_REQUEST, "Invitation already Pending"),
    4303: (HTTP_CONFLICT, "Invitation UID in use, retry"),
    4390: (HTTP_BAD_REQUEST, "Invalid Invitation ID!"),
    4391: (HTTP_BAD_REQUEST, "Invitation Expired!"),
    4392: (HTTP_BAD_REQUEST, "Invitation no longer Pending"),
    4400: (HTTP_BAD_REQUEST, "Template does not exist"),
    4500: (HTTP_BAD_REQUEST, "Request does not exist"),
    4591: (HTTP_BAD_REQUEST, "Request Expired!"),
    4998: (HTTP_BAD_REQUEST, "Object is Immutable"),
    # Server
    5000: (HTTP_INTERNAL_ERROR, "Failed to Create Session"),
    5001: (HTTP_INTERNAL_ERROR, "Failed to Clear Session"),
    5010: (HTTP_INTERNAL_ERROR, "Failed to Open Store"),
    5100: (HTTP_INTERNAL_ERROR, "Database Error"),
    5200: (HTTP_BAD_REQUEST, "Invalid Request"),
    5201: (HTTP_BAD_REQUEST, "NOT a Valid JSON Request"),
    5202: (HTTP_BAD_REQUEST, "JSON Request is Not Valid"),
    5300: (HTTP_INTERNAL_ERROR, "General Message Queue Error"),
    5301: (HTTP_INTERNAL_ERROR, "Failed Sending Message"),
    5302: (HTTP_INTERNAL_ERROR, "Failed Connecting to Queue Server"),
    5400: (HTTP_INTERNAL_ERROR, "Failed to Modify Password"),
    5900: (HTTP_INTERNAL_ERROR, "Unexpected Server Error"),
    5901: (HTTP_INTERNAL_ERROR, "Error Converting to JSON"),
    5920: (HTTP_INTERNAL_ERROR, "System Error Creating Queue Message"),
    5921: (HTTP_INTERNAL_ERROR, "System Error Publishing Queue Message"),
    5999: (HTTP_INTERNAL_ERROR, "Unexpected Server Error"),
}


def is_success(code: int) -> bool:
    return 1000 <= code < 3000


def code_to_message(code: int) -> tuple[int, str]:
    """Map a status code to its HTTP status and message.

    Args:
        code: 4-digit status code

    Returns:
        Tuple of (http_status, message)
    """
    entry = STATUS_CODES.get(code)
    if entry is None:
        logger.warning("Unrecognized status code", extra={"code": code})
        return HTTP_UNAVAILABLE, UNKNOWN_REASON
    return entry
