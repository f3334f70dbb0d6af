"""GitLab to Azure DevOps Migration Tool

Mirrors GitLab repositories into Azure DevOps projects, provisions the
surrounding project resources, and can be re-run safely against targets that
were already migrated.
"""

__version__ = '0.1.0'

from .cli import main

__all__ = ['main']
