"""
User principal name domain transforms.

The forward transform used by import and the reverse transform used by JIT
authentication must stay exact inverses for any UPN with a non-empty local
part: only the domain changes, the local part (including ``#EXT#`` markers)
is kept verbatim.
"""

import secrets
from typing import Optional, Tuple

FALLBACK_LOCAL_PART_LENGTH = 8


def split_upn(upn: str) -> Tuple[str, str]:
    """Split on the first ``@``; raises ``ValueError`` when there is none."""
    local_part, separator, domain = upn.partition("@")
    if not separator:
        raise ValueError(f"'{upn}' is not a user principal name")
    return local_part, domain


def fallback_local_part() -> str:
    return secrets.token_hex(FALLBACK_LOCAL_PART_LENGTH // 2)


def transform_upn_for_target(upn: Optional[str], target_domain: str) -> str:
    """
    Rewrite ``local@source`` to ``local@target``.

    A missing or empty local part is replaced by eight random hex characters
    so the result is always a well-formed UPN. A value without ``@`` is not a
    UPN and is returned unchanged.
    """
    if not upn:
        return f"{fallback_local_part()}@{target_domain}"
    if "@" not in upn:
        return upn
    local_part, _ = split_upn(upn)
    if not local_part:
        local_part = fallback_local_part()
    return f"{local_part}@{target_domain}"


def transform_upn_for_source(upn: str, source_domain: str) -> str:
    """
    Rewrite a target-tenant UPN back to the source tenant domain.

    Raises ``ValueError`` when the value cannot be split or has no local
    part; callers fail closed on it.
    """
    local_part, _ = split_upn(upn or "")
    if not local_part:
        raise ValueError("User principal name has an empty local part")
    return f"{local_part}@{source_domain}"


def mask_phone_number(phone_number: Optional[str]) -> str:
    if not phone_number or len(phone_number) < 4:
        return "***"
    return f"***{phone_number[-4:]}"
