"""Core data models shared by transports, protocols, registry, and CLI."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum, IntFlag


class Status(IntEnum):
    SUCCESS = 0
    UNSUPPORTED = -1
    INVALIDARGS = -2
    NOMEMORY = -3
    NODEVICE = -4
    NOACCESS = -5
    IO = -6
    TIMEOUT = -7
    PROTOCOL = -8
    DATAFORMAT = -9
    CANCELLED = -10


_STATUS_MESSAGES = {
    Status.SUCCESS: "Success",
    Status.UNSUPPORTED: "Unsupported operation",
    Status.INVALIDARGS: "Invalid arguments",
    Status.NOMEMORY: "Out of memory",
    Status.NODEVICE: "No device found",
    Status.NOACCESS: "Access denied",
    Status.IO: "Input/output error",
    Status.TIMEOUT: "Timeout",
    Status.PROTOCOL: "Protocol error",
    Status.DATAFORMAT: "Data format error",
    Status.CANCELLED: "Cancelled",
}


def status_message(status: int) -> str:
    try:
        return _STATUS_MESSAGES[Status(status)]
    except ValueError:
        return "Unknown error"


class Direction(IntFlag):
    INPUT = 0x01
    OUTPUT = 0x02
    ALL = 0x03


class TransportType(IntFlag):
    NONE = 0
    SERIAL = 1 << 0
    USB = 1 << 1
    USBHID = 1 << 2
    IRDA = 1 << 3
    BLUETOOTH = 1 << 4
    BLE = 1 << 5
    USBSTORAGE = 1 << 6


_TRANSPORT_LABELS = (
    (TransportType.SERIAL, "SERIAL"),
    (TransportType.USB, "USB"),
    (TransportType.USBHID, "USBHID"),
    (TransportType.IRDA, "IRDA"),
    (TransportType.BLUETOOTH, "BT"),
    (TransportType.BLE, "BLE"),
    (TransportType.USBSTORAGE, "USBSTORAGE"),
)


def transport_names(transports: int) -> tuple[str, ...]:
    return tuple(label for flag, label in _TRANSPORT_LABELS if transports & flag)


def parse_transport_names(names: list[str] | tuple[str, ...]) -> TransportType:
    lookup = {label: flag for flag, label in _TRANSPORT_LABELS}
    lookup["BLUETOOTH"] = TransportType.BLUETOOTH
    flags = TransportType.NONE
    for name in names:
        flags |= lookup[name.upper()]
    return flags


class DeviceFamily(Enum):
    NULL = "null"
    SUUNTO_SOLUTION = "suunto_solution"
    SUUNTO_EON = "suunto_eon"
    SUUNTO_VYPER = "suunto_vyper"
    SUUNTO_VYPER2 = "suunto_vyper2"
    SUUNTO_D9 = "suunto_d9"
    SUUNTO_EONSTEEL = "suunto_eonsteel"
    REEFNET_SENSUS = "reefnet_sensus"
    REEFNET_SENSUSPRO = "reefnet_sensuspro"
    REEFNET_SENSUSULTRA = "reefnet_sensusultra"
    UWATEC_ALADIN = "uwatec_aladin"
    UWATEC_MEMOMOUSE = "uwatec_memomouse"
    UWATEC_SMART = "uwatec_smart"
    UWATEC_MERIDIAN = "uwatec_meridian"
    OCEANIC_VTPRO = "oceanic_vtpro"
    OCEANIC_VEO250 = "oceanic_veo250"
    OCEANIC_ATOM2 = "oceanic_atom2"
    PELAGIC_I330R = "pelagic_i330r"
    MARES_NEMO = "mares_nemo"
    MARES_PUCK = "mares_puck"
    MARES_DARWIN = "mares_darwin"
    MARES_ICONHD = "mares_iconhd"
    MARES_GENIUS = "mares_genius"
    HW_OSTC = "hw_ostc"
    HW_FROG = "hw_frog"
    HW_OSTC3 = "hw_ostc3"
    CRESSI_EDY = "cressi_edy"
    CRESSI_LEONARDO = "cressi_leonardo"
    CRESSI_GOA = "cressi_goa"
    ZEAGLE_N2ITION3 = "zeagle_n2ition3"
    ATOMICS_COBALT = "atomics_cobalt"
    SHEARWATER_PREDATOR = "shearwater_predator"
    SHEARWATER_PETREL = "shearwater_petrel"
    SHEARWATER_PERDIX = "shearwater_perdix"
    DIVERITE_NITEKQ = "diverite_nitekq"
    CITIZEN_AQUALAND = "citizen_aqualand"
    DIVESOFT_FREEDOM = "divesoft_freedom"
    DEEPBLU_COSMIQ = "deepblu_cosmiq"
    OCEANS_S1 = "oceans_s1"
    MCLEAN_EXTREME = "mclean_extreme"
    LIQUIVISION_LYNX = "liquivision_lynx"
    SPORASUB_SP2 = "sporasub_sp2"
    DEEPSIX_EXCURSION = "deepsix_excursion"
    SEAC_SCREEN = "seac_screen"
    RATIO_IFLY = "ratio_ifly"
    RATIO_IX3M2 = "ratio_ix3m2"
    GARMIN = "garmin"
    TECDIVING_DIVECOMPUTEREU = "tecdiving_divecomputereu"
    SCUBAPRO_G2 = "scubapro_g2"


@dataclass(frozen=True)
class SupportDescriptor:
    family: DeviceFamily
    supported: bool
    protocol_name: str
    transports: tuple[str, ...]
    notes: str = ""


@dataclass(frozen=True)
class DiveComputerDescriptor:
    vendor: str
    product: str
    model: int
    family: DeviceFamily
    transports: TransportType


@dataclass(frozen=True)
class DeviceInfo:
    model: int
    firmware: int
    serial: int
    hardware_version: int | None = None
    features: tuple[str, ...] = ()


@dataclass(frozen=True)
class ProtocolDive:
    fingerprint: bytes
    timestamp: int
    data: bytes


@dataclass(frozen=True)
class SampleEvent:
    type: str
    value: int = 0
    flags: int = 0


@dataclass
class Sample:
    """One decoded profile entry. Units are seconds, meters, Celsius, and bar."""

    time: int
    depth: float = 0.0
    temperature: float | None = None
    pressure: float | None = None
    tank: int | None = None
    ndl: int | None = None
    deco_depth: float | None = None
    deco_time: int | None = None
    heartbeat: int | None = None
    bearing: int | None = None
    rbt: int | None = None
    gas_mix: int | None = None
    ppo2: float | None = None
    events: list[SampleEvent] = field(default_factory=list)


@dataclass(frozen=True)
class DetectedDevice:
    address: str
    name: str
    transport: TransportType
    vendor: str | None = None
    product: str | None = None


@dataclass(frozen=True)
class ResolvedTarget:
    descriptor: DiveComputerDescriptor
    address: str | None


@dataclass(frozen=True)
class DownloadResult:
    target: ResolvedTarget
    device_info: DeviceInfo | None
    dives: list[ProtocolDive]
    fingerprint_saved: bytes | None
