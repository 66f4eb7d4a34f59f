"""Long-lived services: device registry, hotplug monitor, system source."""
