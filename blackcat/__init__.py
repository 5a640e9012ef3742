"""
BlackCat Cloud Resource Access Layer
====================================
Credential, caching, batching and fan-out plumbing for security-assessment
operations against Microsoft Graph, Azure Resource Manager and Key Vault.
"""

__version__ = "1.0.0"
__author__ = "BlackCat"
