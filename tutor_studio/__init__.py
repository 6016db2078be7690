"""
Tutor Studio: an AI Python tutor backed by Gemini (lessons, code analysis, chat, voice, concept media).
"""

__version__ = "0.1.0"
