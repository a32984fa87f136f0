"""byomchat: shared real-time chat with a bring-your-own-model widget."""

__version__ = "0.1.0"
