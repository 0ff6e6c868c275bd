"""
Input Validation Utilities

- Phone number validation and normalization (Indonesian format)
- WhatsApp JID parsing and wa.me click-to-chat links
- Text sanitization for admin replies
"""
import re
from urllib.parse import quote


class ValidationPatterns:
    """Regex patterns for validation"""

    # Indonesian mobile numbers: 08xxx, 628xxx, +628xxx (8-11 digits after the prefix)
    PHONE_INDONESIA = [
        re.compile(r"^08\d{8,11}$"),
        re.compile(r"^628\d{8,11}$"),
        re.compile(r"^\+628\d{8,11}$"),
    ]

    # Media links inside message text
    IMAGE_URL = re.compile(r"(https?://\S+\.(?:jpg|jpeg|png|gif|webp)(?:\?\S*)?)", re.IGNORECASE)
    IMAGE_SUFFIX = re.compile(r"\.(?:jpg|jpeg|png|gif|webp)(?:\?.*)?$", re.IGNORECASE)


class PhoneNumberValidator:
    """Phone number validation and normalization"""

    @staticmethod
    def validate(phone: str) -> bool:
        """
        Validate Indonesian phone number format.

        Args:
            phone: Phone number in any common notation

        Returns:
            True if valid, False otherwise
        """
        if not phone:
            return False
        cleaned = re.sub(r"[^\d+]", "", phone)
        return any(pattern.match(cleaned) for pattern in ValidationPatterns.PHONE_INDONESIA)

    @staticmethod
    def normalize(phone: str) -> str:
        """
        Normalize to international format without the plus sign (628xxx).

        Args:
            phone: Phone number to normalize

        Returns:
            Digits only, 08xxx rewritten as 628xxx
        """
        cleaned = re.sub(r"\D", "", phone or "")
        if cleaned.startswith("08"):
            return "62" + cleaned[1:]
        return cleaned

    @staticmethod
    def from_jid(jid: str | None) -> str | None:
        """
        Extract the phone number from a WhatsApp JID.

        "628123@s.whatsapp.net" and "628123:12@s.whatsapp.net" (multi-device)
        both give "628123".
        """
        if not jid:
            return None
        number = jid.split("@", 1)[0].split(":", 1)[0]
        return number or None

    @staticmethod
    def format_display(phone: str | None) -> str | None:
        """+62 form for display; other numbers are returned as bare digits."""
        if not phone:
            return None
        cleaned = re.sub(r"\D", "", phone)
        if cleaned.startswith("62"):
            return f"+{cleaned}"
        if cleaned.startswith("08"):
            return f"+62{cleaned[1:]}"
        return cleaned

    @staticmethod
    def mask(phone: str | None) -> str:
        """
        Mask phone number for logging (privacy).

        Returns:
            Masked phone number (e.g., 6281234****)
        """
        if not phone or len(phone) < 4:
            return "****"
        return phone[:-4] + "****"


class TextSanitizer:
    """Text sanitization for outgoing admin messages"""

    @staticmethod
    def sanitize(text: str, max_length: int = 4096) -> str:
        """
        Trim, cap length and drop control characters.

        Newlines and tabs are kept; admins often reply with multi-line text.
        4096 is the WhatsApp text message limit.
        """
        if not text:
            return ""
        sanitized = "".join(
            char for char in text
            if char >= " " or char in "\n\r\t"
        )
        return sanitized.strip()[:max_length]


def extract_image_url(text: str | None) -> str | None:
    """First image link in a message, or None."""
    if not text:
        return None
    stripped = text.strip()
    if stripped.startswith("http") and " " not in stripped and (
        ValidationPatterns.IMAGE_SUFFIX.search(stripped) or "/uploads/" in stripped or "/media/" in stripped
    ):
        return stripped
    match = ValidationPatterns.IMAGE_URL.search(text)
    return match.group(1) if match else None


def generate_whatsapp_link(phone: str, message: str | None = None) -> str:
    """
    wa.me click-to-chat link.

    Invalid numbers still get a bare link (without the prefilled text) so a
    caller never ends up with no link at all.
    """
    normalized = PhoneNumberValidator.normalize(phone)
    if not message or not PhoneNumberValidator.validate(normalized):
        return f"https://wa.me/{normalized}"
    return f"https://wa.me/{normalized}?text={quote(message, safe='')}"
