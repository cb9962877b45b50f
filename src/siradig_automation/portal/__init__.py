from .client import DeductionPortalClient, PortalResult
from .page import Found, LookupFailed, NotFound, PlaywrightPortalPage, PortalPage
from .selectors import SELECTORS_VERSION, PortalSelectors
from .steps import StepRecorder

__all__ = [
    "DeductionPortalClient",
    "PortalResult",
    "Found",
    "LookupFailed",
    "NotFound",
    "PlaywrightPortalPage",
    "PortalPage",
    "SELECTORS_VERSION",
    "PortalSelectors",
    "StepRecorder",
]
