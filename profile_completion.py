"""Profile completion scoring for user documents."""

from typing import Any, Dict, List

MISSING_FIELD_INFO = (
    ("emailVerification", "isEmailVerified", "Verify Email",
     "Verify your email address to secure your account"),
    ("location", "hasLocation", "Add Location",
     "Add your location to find items near you"),
    ("contact", "hasContact", "Add Contact",
     "Add your contact number for easier communication"),
    ("profileImage", "hasProfileImage", "Add Profile Picture",
     "Add a profile picture to build trust"),
    ("birthday", "hasBirthday", "Add Birthday",
     "Add your birthday for account verification"),
    ("idVerification", "hasIdVerification", "Verify ID",
     "Upload a valid ID for account verification"),
)


def _has_location(location: Any) -> bool:
    if not isinstance(location, dict):
        return False
    return bool(location.get("latitude") and location.get("longitude") and location.get("address"))


def _has_id_verification(record: Any) -> bool:
    # Older documents store a bare flag; uploads store the submitted ID record.
    if isinstance(record, dict):
        return bool(record.get("idImage") and record.get("idNumber") and record.get("idType"))
    return record is True


def evaluate_profile_completion(user: Dict[str, Any]) -> Dict[str, Any]:
    """Score a user document snapshot.

    Six equally weighted checks. Absent or malformed fields count as
    incomplete; this never raises for any dict input.
    """
    user = user if isinstance(user, dict) else {}
    details = {
        "isEmailVerified": user.get("emailVerified") is True,
        "hasLocation": _has_location(user.get("location")),
        "hasContact": bool(user.get("contactNumber")),
        "hasProfileImage": bool(user.get("profileImage")),
        "hasBirthday": bool(user.get("birthday")),
        "hasIdVerification": _has_id_verification(user.get("idVerified")),
    }

    missing: List[Dict[str, str]] = []
    for field, detail_key, label, description in MISSING_FIELD_INFO:
        if not details[detail_key]:
            missing.append({"field": field, "label": label, "description": description})

    passed = sum(1 for ok in details.values() if ok)
    return {
        "isComplete": not missing,
        "completionPercentage": round(passed / len(details) * 100),
        "missingFields": missing,
        "details": details,
    }
