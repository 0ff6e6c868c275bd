"""
Tests for Input Validation Utilities
"""
import pytest

from govconnect.core.validation import (
    PhoneNumberValidator,
    TextSanitizer,
    extract_image_url,
    generate_whatsapp_link,
)


class TestPhoneNumberValidator:
    """Tests for phone number validation"""

    @pytest.mark.unit
    @pytest.mark.parametrize("phone,expected", [
        ("081234567890", True),
        ("0812-3456-7890", True),
        ("6281234567890", True),
        ("+6281234567890", True),
        ("+62 812 3456 7890", True),
        ("123", False),
        ("abcdefghij", False),
        ("", False),
        ("0812345", False),  # Too short
        ("0812345678901234", False),  # Too long
        ("0212345678", False),  # Landline
    ])
    def test_validate_indonesian_phone(self, phone: str, expected: bool):
        assert PhoneNumberValidator.validate(phone) == expected

    @pytest.mark.unit
    @pytest.mark.parametrize("phone,expected", [
        ("081234567890", "6281234567890"),
        ("+6281234567890", "6281234567890"),
        ("62 812-3456-7890", "6281234567890"),
        ("", ""),
    ])
    def test_normalize(self, phone: str, expected: str):
        assert PhoneNumberValidator.normalize(phone) == expected

    @pytest.mark.unit
    @pytest.mark.parametrize("jid,expected", [
        ("6281234567890@s.whatsapp.net", "6281234567890"),
        ("6281234567890:12@s.whatsapp.net", "6281234567890"),
        ("6281234567890", "6281234567890"),
        ("", None),
        (None, None),
    ])
    def test_from_jid(self, jid, expected):
        assert PhoneNumberValidator.from_jid(jid) == expected

    @pytest.mark.unit
    def test_format_display(self):
        assert PhoneNumberValidator.format_display("6281234567890") == "+6281234567890"
        assert PhoneNumberValidator.format_display("081234567890") == "+6281234567890"
        assert PhoneNumberValidator.format_display(None) is None

    @pytest.mark.unit
    def test_mask_phone(self):
        assert PhoneNumberValidator.mask("6281234567890") == "628123456****"
        assert PhoneNumberValidator.mask("12") == "****"
        assert PhoneNumberValidator.mask(None) == "****"


class TestTextSanitizer:
    """Tests for admin reply sanitization"""

    @pytest.mark.unit
    def test_strips_whitespace(self):
        assert TextSanitizer.sanitize("   Halo   ") == "Halo"

    @pytest.mark.unit
    def test_keeps_newlines_drops_control_chars(self):
        assert TextSanitizer.sanitize("Baris 1\nBaris 2\x00\x07") == "Baris 1\nBaris 2"

    @pytest.mark.unit
    def test_caps_length(self):
        assert len(TextSanitizer.sanitize("a" * 5000)) == 4096
        assert TextSanitizer.sanitize("abcdef", max_length=3) == "abc"

    @pytest.mark.unit
    def test_whitespace_only_is_empty(self):
        assert TextSanitizer.sanitize(" \n\t ") == ""
        assert TextSanitizer.sanitize("") == ""


class TestMediaAndLinks:

    @pytest.mark.unit
    @pytest.mark.parametrize("text,expected", [
        ("https://cdn.example.id/a/foto.jpg", "https://cdn.example.id/a/foto.jpg"),
        ("Lihat foto https://cdn.example.id/b.PNG?x=1 ya", "https://cdn.example.id/b.PNG?x=1"),
        ("https://api.example.id/uploads/abc123", "https://api.example.id/uploads/abc123"),
        ("Tidak ada gambar", None),
        (None, None),
    ])
    def test_extract_image_url(self, text, expected):
        assert extract_image_url(text) == expected

    @pytest.mark.unit
    def test_whatsapp_link_with_message(self):
        link = generate_whatsapp_link("081234567890", "Halo Pak Lurah")
        assert link == "https://wa.me/6281234567890?text=Halo%20Pak%20Lurah"

    @pytest.mark.unit
    def test_whatsapp_link_without_message(self):
        assert generate_whatsapp_link("+6281234567890") == "https://wa.me/6281234567890"

    @pytest.mark.unit
    def test_whatsapp_link_invalid_number_drops_text(self):
        assert generate_whatsapp_link("12345", "Halo") == "https://wa.me/12345"
