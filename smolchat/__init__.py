"""smolchat: chat session orchestration for local LLMs with retrieval-grounded prompts."""

__version__ = "0.1.0"
