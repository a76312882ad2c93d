"""SMS bridge and message-visibility service for mediated conversations."""
