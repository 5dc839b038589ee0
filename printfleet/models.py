from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, time, timedelta, timezone
from enum import Enum, IntEnum
from typing import Any


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().replace(microsecond=0).isoformat()


class SupplyKind(str, Enum):
    UNKNOWN = "unknown"
    BLACK = "black"
    CYAN = "cyan"
    MAGENTA = "magenta"
    YELLOW = "yellow"
    DRUM = "drum"
    FUSER = "fuser"
    TRANSFER_BELT = "transfer_belt"
    WASTE = "waste"
    MAINTENANCE_KIT = "maintenance_kit"
    PHOTOCONDUCTOR_UNIT = "photoconductor_unit"
    DEVELOPER_UNIT = "developer_unit"
    TRANSFER_UNIT = "transfer_unit"
    CLEANING_UNIT = "cleaning_unit"
    TONER_COLLECTION = "toner_collection"


class DeviceType(str, Enum):
    UNKNOWN = "unknown"
    PRINTER = "printer"
    MULTIFUNCTION = "multifunction"


class DiscoveryMethod(str, Enum):
    SUBNET_SCAN = "subnet_scan"
    DIRECTORY = "directory"
    MANAGEMENT = "management"
    MANUAL = "manual"


class DeviceStatus(str, Enum):
    UNKNOWN = "unknown"
    ONLINE = "online"
    OFFLINE = "offline"
    WARNING = "warning"
    ERROR = "error"


class AlertSeverity(IntEnum):
    INFO = 1
    WARNING = 2
    CRITICAL = 3
    EMERGENCY = 4

    @classmethod
    def parse(cls, value: Any) -> "AlertSeverity":
        if isinstance(value, cls):
            return value
        if isinstance(value, int):
            return cls(value)
        return cls[str(value).strip().upper()]


class AlertStatus(str, Enum):
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


class AlertCategory(str, Enum):
    SUPPLY_LOW = "supply_low"
    SUPPLY_CRITICAL = "supply_critical"
    DEVICE_OFFLINE = "device_offline"
    DEVICE_ERROR = "device_error"
    FORECAST_WARNING = "forecast_warning"
    MAINTENANCE_REQUIRED = "maintenance_required"


SUPPLY_CATEGORIES = {AlertCategory.SUPPLY_LOW, AlertCategory.SUPPLY_CRITICAL}
DEVICE_CATEGORIES = {AlertCategory.DEVICE_OFFLINE, AlertCategory.DEVICE_ERROR}


class NotificationChannel(str, Enum):
    EMAIL = "email"
    TELEGRAM = "telegram"
    WEBHOOK = "webhook"


class NotificationPriority(IntEnum):
    LOW = 1
    NORMAL = 2
    HIGH = 3
    URGENT = 4


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


class CredentialType(str, Enum):
    NONE = "none"
    SNMP_V1 = "snmp_v1"
    SNMP_V2C = "snmp_v2c"
    SNMP_V3 = "snmp_v3"
    HTTP_BASIC = "http_basic"


@dataclass
class Credential:
    type: CredentialType = CredentialType.SNMP_V2C
    name: str = "default"
    secret_ref: str = "public"


@dataclass
class ProbeResult:
    ok: bool
    error: str | None = None
    elapsed_ms: float | None = None


@dataclass
class SendResult:
    ok: bool
    error: str | None = None


@dataclass
class SupplyReading:
    kind: SupplyKind
    percent: float | None = None
    level_raw: int | None = None
    max_raw: int | None = None
    name: str | None = None
    part_number: str | None = None
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["kind"] = self.kind.value
        payload["timestamp"] = self.timestamp.isoformat()
        return payload


@dataclass
class DeviceInfo:
    vendor: str | None = None
    model: str | None = None
    serial_number: str | None = None
    firmware_version: str | None = None
    system_object_id: str | None = None
    system_description: str | None = None
    page_count: int | None = None
    color_page_count: int | None = None
    status: DeviceStatus = DeviceStatus.UNKNOWN


@dataclass
class Site:
    id: int
    name: str
    quiet_hours: str | None = None
    subnet_cidr: str | None = None


@dataclass
class Device:
    id: int
    hostname: str
    ip_address: str | None = None
    site_id: int | None = None
    site: Site | None = None
    location: str | None = None
    vendor: str | None = None
    model: str | None = None
    serial_number: str | None = None
    status: DeviceStatus = DeviceStatus.UNKNOWN
    last_seen: datetime | None = None
    credential: Credential | None = None
    is_active: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "hostname": self.hostname,
            "ip_address": self.ip_address,
            "site_id": self.site_id,
            "location": self.location,
            "vendor": self.vendor,
            "model": self.model,
            "serial_number": self.serial_number,
            "status": self.status.value,
            "last_seen": self.last_seen.isoformat() if self.last_seen else None,
            "is_active": self.is_active,
        }


@dataclass
class DiscoveredDevice:
    ip_address: str
    discovery_method: DiscoveryMethod
    hostname: str | None = None
    vendor: str | None = None
    model: str | None = None
    serial_number: str | None = None
    open_ports: set[int] = field(default_factory=set)
    device_type: DeviceType = DeviceType.UNKNOWN
    confidence: float = 0.0
    discovered_at: datetime = field(default_factory=utc_now)

    @property
    def supports_snmp(self) -> bool:
        return 161 in self.open_ports

    def to_dict(self) -> dict[str, Any]:
        return {
            "ip_address": self.ip_address,
            "hostname": self.hostname,
            "vendor": self.vendor,
            "model": self.model,
            "serial_number": self.serial_number,
            "discovery_method": self.discovery_method.value,
            "open_ports": sorted(self.open_ports),
            "device_type": self.device_type.value,
            "confidence": round(self.confidence, 3),
            "discovered_at": self.discovered_at.replace(microsecond=0).isoformat(),
        }


@dataclass(frozen=True)
class DiscoverySettings:
    ip_range: str = "192.168.1.0/24"
    scan_timeout: float = 3.0
    max_concurrent_scans: int = 50
    scan_retries: int = 1
    retry_delay: float = 1.0
    enable_snmp_fingerprint: bool = True
    enable_incremental: bool = False
    use_subnet_scan: bool = True
    use_directory: bool = True
    use_management: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DiscoverySettings":
        retries = int(data.get("scan_retries", 1))
        concurrency = int(data.get("max_concurrent_scans", 50))
        if retries < 0:
            raise ValueError(f"scan_retries must be >= 0, got {retries}")
        if concurrency < 1:
            raise ValueError(f"max_concurrent_scans must be >= 1, got {concurrency}")
        return cls(
            ip_range=str(data.get("ip_range", "192.168.1.0/24")),
            scan_timeout=float(data.get("scan_timeout", 3.0)),
            max_concurrent_scans=concurrency,
            scan_retries=retries,
            retry_delay=float(data.get("retry_delay", 1.0)),
            enable_snmp_fingerprint=bool(data.get("enable_snmp_fingerprint", True)),
            enable_incremental=bool(data.get("enable_incremental", False)),
            use_subnet_scan=bool(data.get("use_subnet_scan", True)),
            use_directory=bool(data.get("use_directory", True)),
            use_management=bool(data.get("use_management", True)),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class AlertRule:
    name: str
    category: AlertCategory
    default_severity: AlertSeverity = AlertSeverity.WARNING
    id: int = 0
    enabled: bool = True
    warning_threshold: float | None = None
    critical_threshold: float | None = None
    hysteresis_margin: float | None = 2.0
    deduplication_window: timedelta = timedelta(minutes=15)
    site_id: int | None = None
    device_id: int | None = None
    supply_kind: SupplyKind | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category.value,
            "default_severity": self.default_severity.name,
            "enabled": self.enabled,
            "warning_threshold": self.warning_threshold,
            "critical_threshold": self.critical_threshold,
            "hysteresis_margin": self.hysteresis_margin,
            "deduplication_window_seconds": self.deduplication_window.total_seconds(),
            "site_id": self.site_id,
            "device_id": self.device_id,
            "supply_kind": self.supply_kind.value if self.supply_kind else None,
        }


@dataclass
class AlertContext:
    device: Device
    supply: SupplyReading | None = None
    current_value: float | None = None
    previous_value: float | None = None
    timestamp: datetime = field(default_factory=utc_now)


@dataclass
class Alert:
    key: str
    device: Device
    category: AlertCategory
    severity: AlertSeverity
    rule_id: int = 0
    id: int = 0
    status: AlertStatus = AlertStatus.ACTIVE
    title: str = ""
    description: str = ""
    supply_kind: SupplyKind | None = None
    current_level: float | None = None
    threshold: float | None = None
    first_occurrence: datetime = field(default_factory=utc_now)
    last_occurrence: datetime = field(default_factory=utc_now)
    occurrence_count: int = 1
    acknowledged_at: datetime | None = None
    acknowledged_by: str | None = None
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    last_notified_severity: AlertSeverity | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def device_id(self) -> int:
        return self.device.id

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "key": self.key,
            "device_id": self.device.id,
            "device_name": self.device.hostname,
            "category": self.category.value,
            "severity": self.severity.name,
            "status": self.status.value,
            "title": self.title,
            "description": self.description,
            "supply_kind": self.supply_kind.value if self.supply_kind else None,
            "current_level": self.current_level,
            "threshold": self.threshold,
            "first_occurrence": self.first_occurrence.isoformat(),
            "last_occurrence": self.last_occurrence.isoformat(),
            "occurrence_count": self.occurrence_count,
            "acknowledged_by": self.acknowledged_by,
            "resolved_by": self.resolved_by,
        }


@dataclass
class NotificationRecipient:
    name: str
    channel: NotificationChannel
    address: str
    id: int = 0
    site_id: int | None = None
    min_severity: AlertSeverity | None = None
    categories: list[AlertCategory] = field(default_factory=list)
    quiet_hours_start: time | None = None
    quiet_hours_end: time | None = None
    # Python weekday numbers, Monday == 0. Empty means every day.
    active_days: list[int] = field(default_factory=list)
    enabled: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "channel": self.channel.value,
            "address": self.address,
            "site_id": self.site_id,
            "min_severity": self.min_severity.name if self.min_severity else None,
            "categories": [category.value for category in self.categories],
            "quiet_hours_start": self.quiet_hours_start.isoformat() if self.quiet_hours_start else None,
            "quiet_hours_end": self.quiet_hours_end.isoformat() if self.quiet_hours_end else None,
            "active_days": list(self.active_days),
            "enabled": self.enabled,
        }


@dataclass
class NotificationTemplate:
    name: str
    channel: NotificationChannel
    body: str
    subject: str = ""
    id: int = 0
    category: AlertCategory | None = None
    min_severity: AlertSeverity | None = None
    enabled: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "channel": self.channel.value,
            "category": self.category.value if self.category else None,
            "min_severity": self.min_severity.name if self.min_severity else None,
            "subject": self.subject,
            "body": self.body,
            "enabled": self.enabled,
        }


@dataclass
class NotificationMessage:
    id: int
    alert: Alert
    recipient: NotificationRecipient
    subject: str
    body: str
    priority: NotificationPriority = NotificationPriority.NORMAL
    status: NotificationStatus = NotificationStatus.PENDING
    retry_count: int = 0
    next_retry_at: datetime | None = None
    error_message: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    sent_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def channel(self) -> NotificationChannel:
        return self.recipient.channel


@dataclass(frozen=True)
class NotificationConfig:
    rate_limit_window: timedelta = timedelta(minutes=5)
    max_notifications_per_window: int = 10
    max_retries: int = 3
    retry_delay: timedelta = timedelta(minutes=1)
    webhook_secret: str | None = None
    webhook_headers: tuple[tuple[str, str], ...] = ()


@dataclass(frozen=True)
class ForecastParameters:
    ewma_alpha: float = 0.3
    minimum_data_points: int = 7
    confidence_level: float = 0.8
    history_limit: int = 10

    def __post_init__(self) -> None:
        if not 0 < self.ewma_alpha <= 1:
            raise ValueError(f"ewma_alpha must be in (0, 1], got {self.ewma_alpha}")
        if self.minimum_data_points < 1:
            raise ValueError(f"minimum_data_points must be >= 1, got {self.minimum_data_points}")


@dataclass
class ForecastSnapshot:
    device_id: int
    supply_kind: SupplyKind
    days_left: int | None = None
    confidence: float | None = None
    daily_usage: float | None = None
    usage_variance: float | None = None
    model: str = "EWMA"
    parameters: dict[str, Any] = field(default_factory=dict)
    at: datetime = field(default_factory=utc_now)


@dataclass
class ForecastResult:
    supply_kind: SupplyKind
    days_left: int
    confidence: float
    daily_usage: float
    usage_variance: float
    lower_bound: int
    upper_bound: int
    model: str = "EWMA"
    parameters: dict[str, Any] = field(default_factory=dict)
    generated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["supply_kind"] = self.supply_kind.value
        payload["generated_at"] = self.generated_at.isoformat()
        return payload


@dataclass(frozen=True)
class MonitoringSettings:
    discovery_interval: timedelta = timedelta(hours=4)
    poll_interval: timedelta = timedelta(minutes=5)
    forecast_interval: timedelta = timedelta(hours=6)
    sweep_interval: timedelta = timedelta(seconds=30)
    poll_concurrency: int = 10
    poll_timeout: float = 30.0
    auto_resolve: bool = False


@dataclass(frozen=True)
class ServiceSettings:
    """Everything one scheduler tick reads, captured at a single point in time."""

    discovery: DiscoverySettings = field(default_factory=DiscoverySettings)
    monitoring: MonitoringSettings = field(default_factory=MonitoringSettings)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    forecast: ForecastParameters = field(default_factory=ForecastParameters)
