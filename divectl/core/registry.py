"""Family to protocol dispatch and the published support matrix."""

from __future__ import annotations

from typing import Any

from divectl.core.model import DeviceFamily, SupportDescriptor, transport_names
from divectl.protocols.base import BaseProtocol
from divectl.protocols.hw_ostc import HWOstcProtocol
from divectl.protocols.mares_iconhd import MaresIconHDProtocol
from divectl.protocols.oceanic_atom2 import OceanicAtom2Protocol
from divectl.protocols.shearwater import ShearwaterProtocol
from divectl.protocols.suunto_eonsteel import SuuntoEonSteelProtocol
from divectl.protocols.uwatec_smart import UwatecSmartProtocol

_PROTOCOLS: dict[DeviceFamily, type[BaseProtocol]] = {
    DeviceFamily.SUUNTO_EONSTEEL: SuuntoEonSteelProtocol,
    DeviceFamily.SHEARWATER_PETREL: ShearwaterProtocol,
    DeviceFamily.SHEARWATER_PREDATOR: ShearwaterProtocol,
    DeviceFamily.SHEARWATER_PERDIX: ShearwaterProtocol,
    DeviceFamily.OCEANIC_ATOM2: OceanicAtom2Protocol,
    DeviceFamily.UWATEC_SMART: UwatecSmartProtocol,
    DeviceFamily.SCUBAPRO_G2: UwatecSmartProtocol,
    DeviceFamily.HW_OSTC: HWOstcProtocol,
    DeviceFamily.MARES_ICONHD: MaresIconHDProtocol,
    DeviceFamily.MARES_GENIUS: MaresIconHDProtocol,
}

_NOTES = {
    DeviceFamily.SUUNTO_EONSTEEL: "EON Steel, EON Core, D5",
    DeviceFamily.SHEARWATER_PETREL: "Petrel, Perdix, Teric, NERD, Peregrine, Tern",
    DeviceFamily.OCEANIC_ATOM2: "Oceanic, Aeris, Sherwood, Hollis, Aqualung, Apeks",
    DeviceFamily.UWATEC_SMART: "Scubapro G2, G3, Aladin, Galileo, Luna, Mantis",
    DeviceFamily.HW_OSTC: "OSTC, OSTC Mk2, OSTC 2N, OSTC 2C",
    DeviceFamily.SCUBAPRO_G2: "G2 family on the Uwatec Smart protocol",
    DeviceFamily.MARES_ICONHD: "Icon HD, Icon HD Net Ready, Matrix, Puck Pro, Quad Air, Smart Air",
    DeviceFamily.MARES_GENIUS: "Genius, Sirius, Horizon over BLE",
}

_PLANNED: tuple[SupportDescriptor, ...] = (
    SupportDescriptor(DeviceFamily.SUUNTO_D9, False, "SuuntoD9", ("SERIAL", "USB"), "Older Suunto protocol"),
    SupportDescriptor(DeviceFamily.SUUNTO_VYPER, False, "SuuntoVyper", ("SERIAL",), "Legacy Suunto protocol"),
    SupportDescriptor(DeviceFamily.SUUNTO_EON, False, "SuuntoEon", ("SERIAL",), "Classic Suunto EON"),
    SupportDescriptor(DeviceFamily.OCEANIC_VTPRO, False, "OceanicVtpro", ("SERIAL",), "Older Oceanic protocol"),
    SupportDescriptor(DeviceFamily.OCEANIC_VEO250, False, "OceanicVeo250", ("SERIAL",), "Oceanic Veo series"),
    SupportDescriptor(DeviceFamily.MARES_NEMO, False, "MaresNemo", ("SERIAL",), "Older Mares protocol"),
    SupportDescriptor(DeviceFamily.HW_OSTC3, False, "HWOstc3", ("SERIAL", "BLE"), "OSTC 3, OSTC Plus, OSTC 4"),
    SupportDescriptor(DeviceFamily.CRESSI_GOA, False, "Cressi", ("SERIAL",), "Cressi"),
    SupportDescriptor(DeviceFamily.DIVERITE_NITEKQ, False, "DiveRite", ("SERIAL",), "Dive Rite"),
    SupportDescriptor(DeviceFamily.DIVESOFT_FREEDOM, False, "Divesoft", ("SERIAL",), "Divesoft Freedom"),
    SupportDescriptor(DeviceFamily.CITIZEN_AQUALAND, False, "Citizen", ("SERIAL",), "Citizen Aqualand"),
    SupportDescriptor(DeviceFamily.ATOMICS_COBALT, False, "AtomicsCobalt", ("USBHID",), "Atomic Aquatics Cobalt"),
    SupportDescriptor(DeviceFamily.DEEPBLU_COSMIQ, False, "Deepblu", ("BLE",), "Deepblu Cosmiq+"),
    SupportDescriptor(
        DeviceFamily.GARMIN,
        False,
        "Garmin",
        ("USBSTORAGE", "BLE"),
        "Descent series; FIT file import is not implemented",
    ),
    SupportDescriptor(DeviceFamily.TECDIVING_DIVECOMPUTEREU, False, "Tecdiving", ("SERIAL", "BLE"), "Tecdiving"),
    SupportDescriptor(DeviceFamily.DEEPSIX_EXCURSION, False, "DeepSix", ("BLE",), "DeepSix Excursion"),
    SupportDescriptor(DeviceFamily.PELAGIC_I330R, False, "Pelagic", ("SERIAL", "BLE"), "Similar to Oceanic Atom2"),
    SupportDescriptor(DeviceFamily.SPORASUB_SP2, False, "Sporasub", ("SERIAL",), "Sporasub SP2"),
    SupportDescriptor(DeviceFamily.MCLEAN_EXTREME, False, "McLean", ("SERIAL",), "McLean Extreme"),
    SupportDescriptor(DeviceFamily.LIQUIVISION_LYNX, False, "Liquivision", ("SERIAL", "USB"), "Liquivision Lynx"),
)


def protocol_class(family: DeviceFamily) -> type[BaseProtocol] | None:
    return _PROTOCOLS.get(family)


def protocol_for(family: DeviceFamily, **options: Any) -> BaseProtocol | None:
    """Return a fresh, unconnected protocol for ``family``, or None if unsupported.

    ``options`` go to the protocol constructor (for example ``model_code`` for
    Oceanic or ``model`` for Suunto).
    """
    cls = protocol_class(family)
    return cls(**options) if cls is not None else None


def is_supported(family: DeviceFamily) -> bool:
    return family in _PROTOCOLS


def support_matrix() -> list[SupportDescriptor]:
    implemented = [
        SupportDescriptor(
            family=family,
            supported=True,
            protocol_name=cls.__name__,
            transports=transport_names(cls.transport_types),
            notes=_NOTES.get(family, ""),
        )
        for family, cls in _PROTOCOLS.items()
    ]
    return implemented + list(_PLANNED)


def support_info(family: DeviceFamily) -> SupportDescriptor | None:
    for entry in support_matrix():
        if entry.family == family:
            return entry
    return None


def supported_families() -> list[DeviceFamily]:
    return [entry.family for entry in support_matrix() if entry.supported]
