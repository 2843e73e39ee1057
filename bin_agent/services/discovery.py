"""Home Assistant MQTT discovery record for the bin sensor."""
from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Dict

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from bin_agent.services.publisher import SerialPublisher

logger = logging.getLogger(__name__)


class DiscoveryDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    unit_of_measurement: str
    state_topic: str
    unique_id: str
    config_topic: str = Field(exclude=True)

    def as_payload(self) -> Dict[str, str]:
        return self.model_dump(mode="json")

    def to_json(self) -> str:
        return json.dumps(self.as_payload())


class DiscoveryPublisher:
    """Publishes the retained config record so the hub can (re)register the sensor."""

    def __init__(self, publisher: "SerialPublisher", descriptor: DiscoveryDescriptor) -> None:
        self.publisher = publisher
        self.descriptor = descriptor
        self._payload = descriptor.to_json()

    async def send(self) -> None:
        logger.debug("Sending discovery config to %s", self.descriptor.config_topic)
        await self.publisher.publish(self.descriptor.config_topic, self._payload, retain=True)
