"""
GovConnect channel console: WhatsApp session pairing and AI/admin live-chat
takeover coordination against the channel service backend.
"""
__version__ = "0.1.0"
