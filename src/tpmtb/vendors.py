"""
TPM vendor IDs from the TCG TPM Vendor ID Registry.

Source: TCG TPM Vendor ID Registry Family 1.2 and 2.0, Version 1.07,
Revision 0.02.
"""

from typing import Dict, List

from .errors import InvalidVendorID

# Registry order, not alphabetical
VENDORS: Dict[str, str] = {
    "AMD": "AMD",
    "ANT": "Ant Group",
    "ATML": "Atmel",
    "BRCM": "Broadcom",
    "CSCO": "Cisco",
    "FLYS": "Flyslice Technologies",
    "GOOG": "Google",
    "HPI": "HPI",
    "HPE": "HPE",
    "HISI": "Huawei",
    "IBM": "IBM",
    "IFX": "Infineon",
    "INTC": "Intel",
    "LEN": "Lenovo",
    "MSFT": "Microsoft",
    "NSG": "NSING",
    "NSM": "National Semiconductor",
    "NTC": "Nuvoton Technology",
    "NTZ": "Nationz",
    "QCOM": "Qualcomm",
    "ROCC": "Fuzhou Rockchip",
    "SEAL": "Wisekey",
    "SECE": "SecEdge",
    "SMSN": "Samsung",
    "SMSC": "Standard Microsystems Corporation",
    "SNS": "Sinosun",
    "STM": "STMicroelectronics",
    "TXN": "Texas Instruments",
    "WEC": "Winbond",
}

VALID_VENDOR_IDS: List[str] = list(VENDORS)


def is_valid_vendor_id(vendor_id: str) -> bool:
    return vendor_id in VENDORS


def validate_vendor_id(vendor_id: str) -> None:
    """Raise InvalidVendorID unless vendor_id is in the registry."""
    if not is_valid_vendor_id(vendor_id):
        raise InvalidVendorID(vendor_id)
