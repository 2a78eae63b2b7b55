"""WhatsApp Cloud API relay: conversations, read state, broadcast groups."""
