import os

# Boolean env toggles read once at import. Typed config lives in utils/settings.py.


def enabled(name: str, default: str = "false") -> bool:
    return (os.getenv(name, default) or "").lower() == "true"


REQUEST_LOGGING = enabled("NIGHTLIFE_REQUEST_LOGGING", "true")
LIVE_REEVALUATION = enabled("NIGHTLIFE_LIVE_REEVALUATION", "true")
