"""
chatflow - branching chat client for OpenAI-compatible and Google OAuth models

Runs a local gateway that normalizes OpenAI-compatible, Gemini CLI and
Antigravity streams into plain text, and a conversation tree store that
lets a chat branch into sub-conversations.
"""

__version__ = "1.0.0"

# Configuration directory
CONFIG_DIR = "~/.chatflow"
CONFIG_FILE = "~/.chatflow/config.json"
STATE_FILE = "~/.chatflow/state.json"
PID_FILE = "~/.chatflow/gateway.pid"
LOG_FILE = "~/.chatflow/logs/gateway.log"
