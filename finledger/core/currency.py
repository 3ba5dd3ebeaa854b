from __future__ import annotations

from typing import Any, Optional

# ISO 4217 active codes, plus the precious-metal units providers report for bullion positions.
ISO_4217_CODES = frozenset(
    """
    AED AFN ALL AMD ANG AOA ARS AUD AWG AZN BAM BBD BDT BGN BHD BIF BMD BND BOB BRL BSD BTN BWP BYN
    BZD CAD CDF CHF CLP CNY COP CRC CUP CVE CZK DJF DKK DOP DZD EGP ERN ETB EUR FJD FKP GBP GEL GHS
    GIP GMD GNF GTQ GYD HKD HNL HTG HUF IDR ILS INR IQD IRR ISK JMD JOD JPY KES KGS KHR KMF KPW KRW
    KWD KYD KZT LAK LBP LKR LRD LSL LYD MAD MDL MGA MKD MMK MNT MOP MRU MUR MVR MWK MXN MYR MZN NAD
    NGN NIO NOK NPR NZD OMR PAB PEN PGK PHP PKR PLN PYG QAR RON RSD RUB RWF SAR SBD SCR SDG SEK SGD
    SHP SLE SOS SRD SSP STN SVC SYP SZL THB TJS TMT TND TOP TRY TTD TWD TZS UAH UGX USD UYU UZS VES
    VND VUV WST XAF XCD XOF XPF YER ZAR ZMW ZWL XAU XAG XPT XPD
    """.split()
)

# "no currency" placeholder; providers emit it for unknown values.
_REJECTED = frozenset({"XXX"})


def normalize_currency(value: Any) -> Optional[str]:
    """
    Return an upper-cased ISO 4217 code, or None.

    Blank, non-alphabetic, wrong-length, placeholder ("XXX") and unknown codes all map to
    None; callers fall back to the account currency.
    """
    if value is None:
        return None
    code = str(value).strip().upper()
    if len(code) != 3 or not code.isalpha():
        return None
    if code in _REJECTED or code not in ISO_4217_CODES:
        return None
    return code


def is_valid_currency(value: Any) -> bool:
    return normalize_currency(value) is not None


def currency_or_default(value: Any, default: str) -> str:
    return normalize_currency(value) or default
