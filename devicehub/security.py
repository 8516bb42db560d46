from __future__ import annotations

import base64
import hashlib
from dataclasses import dataclass

from cryptography.fernet import Fernet, InvalidToken
from fastapi import Request

from devicehub.errors import ApiError
from devicehub.settings import get_settings


@dataclass(frozen=True, slots=True)
class DataScope:
    organization_id: int
    branch_ids: tuple[int, ...] | None = None

    def allows_branch(self, branch_id: int | None) -> bool:
        if self.branch_ids is None:
            return True
        return branch_id in self.branch_ids


def _build_credential_cipher() -> Fernet:
    material = (get_settings().credential_encryption_key or "").strip() or "dev-device-credential-key"
    derived = base64.urlsafe_b64encode(hashlib.sha256(material.encode("utf-8")).digest())
    return Fernet(derived)


def encrypt_secret(value: str) -> str:
    return _build_credential_cipher().encrypt(value.encode("utf-8")).decode("ascii")


def decrypt_secret(token: str) -> str:
    try:
        return _build_credential_cipher().decrypt(token.encode("ascii")).decode("utf-8")
    except (InvalidToken, ValueError) as exc:
        raise ApiError(
            status_code=500,
            code="CREDENTIAL_DECRYPT_FAILED",
            message="Stored device credential could not be decrypted.",
        ) from exc


def _parse_int_header(raw: str | None) -> int | None:
    value = (raw or "").strip()
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def require_data_scope(request: Request) -> DataScope:
    organization_id = _parse_int_header(request.headers.get("X-Organization-Id"))
    if organization_id is None:
        raise ApiError(
            status_code=400,
            code="SCOPE_REQUIRED",
            message="X-Organization-Id header is required.",
        )

    raw_branches = (request.headers.get("X-Branch-Ids") or "").strip()
    branch_ids: tuple[int, ...] | None = None
    if raw_branches:
        parsed: list[int] = []
        for item in raw_branches.split(","):
            branch_id = _parse_int_header(item)
            if branch_id is None:
                raise ApiError(
                    status_code=400,
                    code="SCOPE_REQUIRED",
                    message="X-Branch-Ids must be a comma separated list of integers.",
                )
            parsed.append(branch_id)
        branch_ids = tuple(parsed)

    request.state.actor = "admin"
    request.state.actor_id = request.headers.get("X-Actor-Id") or "admin"
    request.state.organization_id = organization_id
    return DataScope(organization_id=organization_id, branch_ids=branch_ids)
