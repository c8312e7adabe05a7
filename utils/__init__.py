"""Chat Sync Core - Shared utilities"""
