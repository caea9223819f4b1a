"""
Built-in integration providers.
"""

from integrations.providers.asana import AsanaProvider
from integrations.providers.clickup import ClickUpProvider
from integrations.providers.github import GitHubProvider
from integrations.providers.gitlab import GitLabProvider
from integrations.providers.jira import JiraProvider
from integrations.providers.linear import LinearProvider
from integrations.providers.notion import NotionProvider
from integrations.providers.slack import SlackProvider
from integrations.providers.trello import TrelloProvider

BUILTIN_PROVIDERS = [
    SlackProvider,
    JiraProvider,
    LinearProvider,
    GitHubProvider,
    GitLabProvider,
    AsanaProvider,
    ClickUpProvider,
    NotionProvider,
    TrelloProvider,
]

__all__ = [
    "BUILTIN_PROVIDERS",
    "AsanaProvider",
    "ClickUpProvider",
    "GitHubProvider",
    "GitLabProvider",
    "JiraProvider",
    "LinearProvider",
    "NotionProvider",
    "SlackProvider",
    "TrelloProvider",
]
