"""
supportsync API Module

FastAPI backend for the chat-history lookup screen:
- Conversations of a customer by phone number
- Messages of a conversation
- Health checks

Reads go straight to Freshchat; nothing here writes to the store.
"""
