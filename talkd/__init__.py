"""talkd: push-to-talk voice daemon for a conversational agent."""

__version__ = "0.1.0"
