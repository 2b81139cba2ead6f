"""
kubeplane/models/account.py

Cloud account records, stored under `accounts/<name>`. The control plane
only reads them; kubeplanectl import-account writes them.
"""

from __future__ import annotations

from typing import Dict

from pydantic import Field

from kubeplane.models.base import KubeplaneModel
from kubeplane.models.providers import Credentials, ProviderName, parse_credentials


class CloudAccount(KubeplaneModel):
    name: str
    provider: ProviderName
    credentials: Dict[str, str] = Field(default_factory=dict)

    def parsed_credentials(self) -> Credentials:
        return parse_credentials(self.provider, dict(self.credentials))
