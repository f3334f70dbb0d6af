"""Platform API clients and transport."""

from .client import AzureDevOpsClient, GitLabClient, PlatformClientFactory
from .exceptions import APIError, Side

__all__ = ['APIError', 'AzureDevOpsClient', 'GitLabClient', 'PlatformClientFactory', 'Side']
