"""Pydantic request/response schemas for the harmony API."""
