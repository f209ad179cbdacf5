"""Marketplace front half — postings and applications."""

from trustwork.market.applications import ApplicationManager
from trustwork.market.posting_state_machine import PostingStateMachine
from trustwork.market.postings import PostingManager, filter_postings

__all__ = ["ApplicationManager", "PostingManager", "PostingStateMachine", "filter_postings"]
