# license_rules.py
"""
License decision logic shared by every resource family.

decide_license_change() is a pure function: it takes the settings currently stored
on a resource plus the caller's requested changes and returns the settings to write
back, whether a write is needed, and any policy rejections. Persisting the result
is the caller's job.

Rules (applied in order, each independent):
1. License type: "LicenseOnly" is refused while ESU is (or would stay) enabled, and
   then nothing else in the request is applied either.
   Otherwise the type is written when none is set yet or force is on.
2. ESU: enabling needs a paid / pay-as-you-go license type; disabling always allowed.
3. Per-core (PCore) license: same rule as ESU.
Every permitted ESU / PCore change is stamped with a UTC millisecond timestamp.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, List, Optional

# Arc-enabled SQL Server license types
PAID = "Paid"
PAYG = "PAYG"
LICENSE_ONLY = "LicenseOnly"
ARC_LICENSE_TYPES = (PAID, PAYG, LICENSE_ONLY)
PAID_LICENSE_TYPES: FrozenSet[str] = frozenset({PAID, PAYG})

# Azure SQL (MI, DB, pools, SSIS) license types
LICENSE_INCLUDED = "LicenseIncluded"
BASE_PRICE = "BasePrice"
AZURE_SQL_LICENSE_TYPES = (LICENSE_INCLUDED, BASE_PRICE)

# SQL VM (SQL IaaS extension) license types
SQL_VM_PAYG = "PAYG"
SQL_VM_AHUB = "AHUB"
SQL_VM_DR = "DR"
SQL_VM_LICENSE_MAP = {
    LICENSE_INCLUDED: SQL_VM_PAYG,
    BASE_PRICE: SQL_VM_AHUB,
}

# Arc extension settings keys
KEY_LICENSE_TYPE = "LicenseType"
KEY_ESU = "enableExtendedSecurityUpdates"
KEY_ESU_TIMESTAMP = "esuLastUpdatedTimestamp"
KEY_PCORE = "UsePhysicalCoreLicense"
KEY_PCORE_APPLIED = "IsApplied"
KEY_PCORE_TIMESTAMP = "LastUpdatedTimestamp"


def utc_timestamp(now: Optional[datetime] = None) -> str:
    """UTC, millisecond precision, e.g. 2024-03-01T10:15:30.123Z"""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


def parse_yes_no(value: Optional[str]) -> Optional[bool]:
    if value is None or str(value).strip() == "":
        return None
    v = str(value).strip().lower()
    if v in ("yes", "y", "true", "1"):
        return True
    if v in ("no", "n", "false", "0"):
        return False
    raise ValueError(f"Expected Yes or No, got {value!r}")


def _as_bool(value: Any) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    s = str(value).strip().lower()
    if s in ("true", "1", "yes"):
        return True
    if s in ("false", "0", "no", ""):
        return False
    return None


@dataclass(frozen=True)
class LicenseSettings:
    license_type: Optional[str] = None
    esu_enabled: Optional[bool] = None
    esu_last_updated: Optional[str] = None
    pcore_enabled: Optional[bool] = None
    pcore_last_updated: Optional[str] = None


@dataclass(frozen=True)
class LicenseRequest:
    license_type: Optional[str] = None
    enable_esu: Optional[bool] = None
    use_pcore: Optional[bool] = None
    force: bool = False

    def is_empty(self) -> bool:
        return self.license_type is None and self.enable_esu is None and self.use_pcore is None


@dataclass(frozen=True)
class LicenseDecision:
    settings: LicenseSettings
    changed: bool = False
    rejections: List[str] = field(default_factory=list)


def decide_license_change(
    current: LicenseSettings,
    request: LicenseRequest,
    *,
    paid_license_types: FrozenSet[str] = PAID_LICENSE_TYPES,
    now: Optional[datetime] = None,
) -> LicenseDecision:
    stamp = utc_timestamp(now)
    new = current
    changed = False
    rejections: List[str] = []

    # 1) license type
    if request.license_type is not None:
        esu_on = request.enable_esu if request.enable_esu is not None else bool(current.esu_enabled)
        if request.license_type == LICENSE_ONLY and esu_on:
            # the whole request is refused, ESU / PCore parts included
            return LicenseDecision(
                settings=current,
                changed=False,
                rejections=[
                    f"License type {LICENSE_ONLY} cannot be set while Extended Security Updates are enabled; "
                    "request ESU=No together with the license change."
                ],
            )
        if current.license_type is None or request.force:
            if new.license_type != request.license_type:
                new = replace(new, license_type=request.license_type)
                changed = True

    eligible = new.license_type in paid_license_types

    # 2) ESU
    if request.enable_esu is not None:
        if request.enable_esu and not eligible:
            rejections.append(
                f"Extended Security Updates need a paid license type ({', '.join(sorted(paid_license_types))}); "
                f"current license type is {new.license_type or 'not set'}."
            )
        elif bool(current.esu_enabled) != request.enable_esu:
            new = replace(new, esu_enabled=request.enable_esu, esu_last_updated=stamp)
            changed = True

    # 3) per-core license
    if request.use_pcore is not None:
        if request.use_pcore and not eligible:
            rejections.append(
                f"Physical core licensing needs a paid license type ({', '.join(sorted(paid_license_types))}); "
                f"current license type is {new.license_type or 'not set'}."
            )
        elif bool(current.pcore_enabled) != request.use_pcore:
            new = replace(new, pcore_enabled=request.use_pcore, pcore_last_updated=stamp)
            changed = True

    return LicenseDecision(settings=new, changed=changed, rejections=rejections)


def decide_license_type(current_license_type: Optional[str], target: str) -> LicenseDecision:
    """
    Azure SQL flavour: the stored license type is a provider default rather than a
    user choice, so a differing value is always overwritten. No ESU / PCore here.
    """
    return decide_license_change(
        LicenseSettings(license_type=current_license_type),
        LicenseRequest(license_type=target, force=True),
    )


@dataclass
class ArcExtensionSettings:
    """
    Typed view over the SQL Server Arc extension settings document.
    Keys we do not manage are kept in `extra` and written back untouched.
    """
    license: LicenseSettings
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: Optional[Dict[str, Any]]) -> "ArcExtensionSettings":
        raw = copy.deepcopy(dict(settings or {}))
        license_type = raw.pop(KEY_LICENSE_TYPE, None) or None
        esu = _as_bool(raw.pop(KEY_ESU, None))
        esu_ts = raw.pop(KEY_ESU_TIMESTAMP, None)

        pcore = raw.pop(KEY_PCORE, None)
        pcore_on = pcore_ts = None
        if isinstance(pcore, dict):
            pcore_on = _as_bool(pcore.get(KEY_PCORE_APPLIED))
            pcore_ts = pcore.get(KEY_PCORE_TIMESTAMP)
        elif pcore is not None:
            raw[KEY_PCORE] = pcore

        return cls(
            license=LicenseSettings(
                license_type=license_type,
                esu_enabled=esu,
                esu_last_updated=esu_ts,
                pcore_enabled=pcore_on,
                pcore_last_updated=pcore_ts,
            ),
            extra=raw,
        )

    def with_license(self, license: LicenseSettings) -> "ArcExtensionSettings":
        return ArcExtensionSettings(license=license, extra=copy.deepcopy(self.extra))

    def to_settings(self) -> Dict[str, Any]:
        out = copy.deepcopy(self.extra)
        lic = self.license
        if lic.license_type is not None:
            out[KEY_LICENSE_TYPE] = lic.license_type
        if lic.esu_enabled is not None:
            out[KEY_ESU] = lic.esu_enabled
        if lic.esu_last_updated is not None:
            out[KEY_ESU_TIMESTAMP] = lic.esu_last_updated
        if lic.pcore_enabled is not None:
            pcore = {KEY_PCORE_APPLIED: lic.pcore_enabled}
            if lic.pcore_last_updated is not None:
                pcore[KEY_PCORE_TIMESTAMP] = lic.pcore_last_updated
            out[KEY_PCORE] = pcore
        return out
