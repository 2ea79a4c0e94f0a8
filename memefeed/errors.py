"""Exception hierarchy for the feed services."""

from __future__ import annotations


class FeedError(Exception):
    """Base class for errors raised by :mod:`memefeed`."""


class ConfigError(FeedError):
    """Raised when the service configuration is invalid."""


class UnknownFeedError(FeedError, KeyError):
    """Raised when a feed name does not match any configured feed."""

    def __init__(self, name: str) -> None:
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"unknown feed {self.name!r}"


class MalformedPayloadError(FeedError, ValueError):
    """Raised when a snapshot payload cannot be decoded or has the wrong shape."""


__all__ = ["FeedError", "ConfigError", "UnknownFeedError", "MalformedPayloadError"]
