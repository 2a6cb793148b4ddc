"""
Agents Module
=============
Contexts that talk to the background over the relay:
- PageAdapter / PageWindow: content script of an open page
- ProofExecutor: offscreen transaction submitter
- bridge: approval surface proxy and the approval popup
"""

from .page_adapter import PageAdapter, PageWindow
from .executor import ProofExecutor

__all__ = [
    "PageAdapter",
    "PageWindow",
    "ProofExecutor",
]
