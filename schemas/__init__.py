"""Chat Sync Core - Payload schemas"""
