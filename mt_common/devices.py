"""
Static catalog of the Android devices jobs can run on.

The catalog is built once at process start and never mutated, so it can be
shared between tasks without locking. It also translates catalog ids into
Firebase Test Lab model/version codes.
"""

import logging
from dataclasses import dataclass

from .errors import ValidationError
from .models import Device

logger = logging.getLogger(__name__)


TOP_DEVICES: tuple[Device, ...] = (
    Device("samsung_galaxy_s24", "Samsung Galaxy S24", "Samsung", "14", 34, '6.2"', "2340 x 1080", True),
    Device("samsung_galaxy_s23", "Samsung Galaxy S23", "Samsung", "13", 33, '6.1"', "2340 x 1080", True),
    Device("pixel_8_pro", "Google Pixel 8 Pro", "Google", "14", 34, '6.7"', "2992 x 1344", True),
    Device("pixel_7", "Google Pixel 7", "Google", "13", 33, '6.3"', "2400 x 1080", True),
    Device("oneplus_11", "OnePlus 11", "OnePlus", "13", 33, '6.7"', "3216 x 1440", True),
    Device("xiaomi_13_pro", "Xiaomi 13 Pro", "Xiaomi", "13", 33, '6.73"', "3200 x 1440", True),
    Device("samsung_galaxy_a54", "Samsung Galaxy A54", "Samsung", "13", 33, '6.4"', "2340 x 1080", True),
    Device("samsung_galaxy_note_20", "Samsung Galaxy Note 20", "Samsung", "12", 31, '6.7"', "2400 x 1080"),
    Device("huawei_p50_pro", "Huawei P50 Pro", "Huawei", "11", 30, '6.6"', "2700 x 1228"),
    Device("oppo_find_x5_pro", "OPPO Find X5 Pro", "OPPO", "12", 31, '6.7"', "3216 x 1440"),
    Device("vivo_x80_pro", "Vivo X80 Pro", "Vivo", "12", 31, '6.78"', "3200 x 1440"),
    Device("motorola_edge_30", "Motorola Edge 30", "Motorola", "12", 31, '6.5"', "2400 x 1080"),
    Device("lg_wing", "LG Wing", "LG", "11", 30, '6.8"', "2460 x 1080"),
    Device("samsung_galaxy_s22_ultra", "Samsung Galaxy S22 Ultra", "Samsung", "13", 33, '6.8"', "3088 x 1440", True),
    Device("pixel_6a", "Google Pixel 6a", "Google", "13", 33, '6.1"', "2400 x 1080", True),
    Device("nothing_phone_1", "Nothing Phone (1)", "Nothing", "12", 31, '6.55"', "2400 x 1080"),
    Device("realme_gt_2_pro", "Realme GT 2 Pro", "Realme", "12", 31, '6.7"', "3216 x 1440"),
    Device("sony_xperia_1_iv", "Sony Xperia 1 IV", "Sony", "12", 31, '6.5"', "3840 x 1644"),
    Device("asus_rog_phone_6", "ASUS ROG Phone 6", "ASUS", "12", 31, '6.78"', "2448 x 1080"),
    Device("fairphone_4", "Fairphone 4", "Fairphone", "11", 30, '6.3"', "2340 x 1080"),
)

# Default selection for new jobs, highest priority first
DEFAULT_DEVICE_SELECTION: tuple[str, ...] = (
    "samsung_galaxy_s24",
    "samsung_galaxy_s23",
    "pixel_8_pro",
    "pixel_7",
    "samsung_galaxy_s22_ultra",
)

# Catalog id -> Test Lab androidModelId
PROVIDER_MODEL_CODES: dict[str, str] = {
    "samsung_galaxy_s24": "sm-s908b",
    "samsung_galaxy_s23": "sm-s911b",
    "pixel_8_pro": "husky",
    "pixel_7": "panther",
    "samsung_galaxy_s22_ultra": "sm-s908b",
    "pixel_6a": "bluejay",
    "oneplus_11": "phn110",
    "xiaomi_13_pro": "2210132C",
    "samsung_galaxy_a54": "sm-a546b",
}

# Galaxy S10; used for ids without a model mapping
DEFAULT_PROVIDER_MODEL = "sm-g973"
DEFAULT_PROVIDER_VERSION = "29"


@dataclass(frozen=True)
class ProviderDevice:
    """A device as addressed by the device-farm provider."""

    model_id: str
    version_id: str


class DeviceCatalog:
    """
    Read-only registry of testable devices.

    Args:
        devices: Devices in catalog order
        provider_codes: Catalog id -> provider model code
        default_provider_model: Model code for ids without a mapping. When None,
            unmapped ids are rejected instead of degraded.
        priority: Ids that lead the default selection order
    """

    def __init__(
        self,
        devices: tuple[Device, ...] = TOP_DEVICES,
        provider_codes: dict[str, str] | None = None,
        default_provider_model: str | None = DEFAULT_PROVIDER_MODEL,
        default_provider_version: str = DEFAULT_PROVIDER_VERSION,
        priority: tuple[str, ...] = DEFAULT_DEVICE_SELECTION,
    ):
        self._devices = tuple(devices)
        self._by_id = {device.id: device for device in self._devices}
        self._provider_codes = dict(
            PROVIDER_MODEL_CODES if provider_codes is None else provider_codes
        )
        self.default_provider_model = default_provider_model
        self.default_provider_version = default_provider_version
        self._priority = self._priority_order(priority)

    def _priority_order(self, priority: tuple[str, ...]) -> tuple[str, ...]:
        ordered = [device_id for device_id in priority if device_id in self._by_id]
        ordered += [d.id for d in self._devices if d.popular and d.id not in ordered]
        ordered += [d.id for d in self._devices if d.id not in ordered]
        return tuple(ordered)

    def lookup(self, device_id: str) -> Device | None:
        return self._by_id.get(device_id)

    def list_all(self) -> list[Device]:
        return list(self._devices)

    def list_default(self, n: int = 5) -> list[str]:
        """Return the ids of the n highest-priority devices."""
        return list(self._priority[: max(n, 0)])

    def popular(self) -> list[Device]:
        return [device for device in self._devices if device.popular]

    def by_api_level(self, api_level: int) -> list[Device]:
        return [device for device in self._devices if device.api_level == api_level]

    def by_manufacturer(self, manufacturer: str) -> list[Device]:
        wanted = manufacturer.lower()
        return [d for d in self._devices if d.manufacturer.lower() == wanted]

    def is_mappable(self, device_id: str) -> bool:
        return device_id in self._provider_codes or self.default_provider_model is not None

    def provider_device(self, device_id: str) -> ProviderDevice:
        """
        Translate a device id into the provider's model/version codes.

        Unmapped ids degrade to the default provider model.

        Raises:
            KeyError: If the id has no mapping and no default is configured
        """
        model_id = self._provider_codes.get(device_id)
        if model_id is None:
            if self.default_provider_model is None:
                raise KeyError(device_id)
            model_id = self.default_provider_model

        device = self._by_id.get(device_id)
        version_id = str(device.api_level) if device else self.default_provider_version
        return ProviderDevice(model_id=model_id, version_id=version_id)

    def validate_selection(self, device_ids: list[str] | tuple[str, ...]) -> list[str]:
        """
        Validate a submitted device selection.

        Returns:
            The selection with duplicates removed, in submission order

        Raises:
            ValidationError: If the selection is empty, contains blank ids, or
                contains ids that are neither known nor default-mappable
        """
        if not device_ids:
            raise ValidationError("At least one device must be selected")

        selection: list[str] = []
        for device_id in device_ids:
            if not isinstance(device_id, str) or not device_id.strip():
                raise ValidationError(f"Invalid device id: {device_id!r}")
            if device_id in selection:
                continue
            if device_id not in self._by_id:
                if not self.is_mappable(device_id):
                    raise ValidationError(f"Unsupported device: {device_id}")
                logger.warning(
                    f"Device {device_id} is not in the catalog, "
                    f"falling back to provider model {self.default_provider_model}"
                )
            selection.append(device_id)

        return selection
