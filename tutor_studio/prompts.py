DEFAULT_TOPIC = "Introduction to Python"

QUICK_TOPICS = ["Variables", "Loops", "Functions", "Classes"]

DEFAULT_CODE = 'print("Hello, Python!")'

DEFAULT_EDIT_INSTRUCTION = "Add a retro filter"

SIMULATED_TRANSCRIPT = "How do I use list comprehensions in Python?"

CHAT_FALLBACK_REPLY = "No response"


TUTOR_SYSTEM = """You are a friendly and expert Python tutor.
Your goal is to help users learn Python through practical examples and clear explanations.
Always provide code snippets in Python.
If a user asks a complex question, use your thinking capabilities to provide a thorough answer.
"""


VOICE_SYSTEM = """You are a friendly Python tutor.
Have a conversation with the user about Python.
Keep it interactive and encouraging.
"""


def analyze_code_prompt(code: str) -> str:
    return (
        "Analyze this Python code for bugs, style improvements, and explain what it does:\n\n"
        f"```python\n{code}\n```"
    )


def lesson_prompt(topic: str) -> str:
    return (
        f"Create a practical Python lesson about: {topic}. "
        "Include a brief explanation, a code example, and a small exercise for the user."
    )


def concept_image_prompt(concept: str) -> str:
    return (
        f"A clean, educational diagram or illustration explaining the Python concept: {concept}. "
        "Minimalist style, high contrast, suitable for a learning dashboard."
    )


def concept_video_prompt(concept: str) -> str:
    return (
        f"An educational animation explaining the Python concept: {concept}. "
        "Clear, minimalist, professional motion graphics."
    )
