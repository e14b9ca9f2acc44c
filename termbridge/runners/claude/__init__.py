from termbridge.runners.claude.processor import ClaudeEventProcessor, ClaudeResult
from termbridge.runners.claude.runner import ClaudeRunner

__all__ = ["ClaudeEventProcessor", "ClaudeResult", "ClaudeRunner"]
