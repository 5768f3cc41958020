from dataclasses import dataclass


@dataclass(frozen=True)
class DashboardConfig:
    """Tunables for the dashboard. Defaults reproduce the reference layout."""

    # Samples kept per sparkline series
    series_capacity: int = 100
    # Console panel height in rows, and rows reserved for its border + label
    log_height: int = 7
    log_margin: int = 3
    # Seconds between periodic repaints
    refresh_interval: float = 1.0
    gas_panel_height: int = 20
    block_time_panel_height: int = 8
    # Dial timeout for the node endpoint (the subscription itself has none)
    connect_timeout: float = 10.0

    def __post_init__(self):
        if self.series_capacity < 1:
            raise ValueError(f"series_capacity must be >= 1, got {self.series_capacity}")
        if self.log_height - self.log_margin < 0:
            raise ValueError(
                f"log_height ({self.log_height}) must be >= log_margin ({self.log_margin})"
            )
        if self.refresh_interval <= 0:
            raise ValueError(f"refresh_interval must be > 0, got {self.refresh_interval}")
