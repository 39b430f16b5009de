from services.alert_engine.health import HealthMetrics
from services.alert_engine.thresholds import AlertThresholds

# Staleness tier between the stale-event threshold and the offline threshold.
STALE_HOUR_MINUTES = 60


def has_enough_signal_samples(thresholds: AlertThresholds, metrics: HealthMetrics) -> bool:
    return metrics.signal_samples >= thresholds.signal_min_samples


def signal_below_floor(thresholds: AlertThresholds, metrics: HealthMetrics) -> bool:
    if metrics.avg_rssi is not None and metrics.avg_rssi <= thresholds.poor_rssi_threshold:
        return True
    if metrics.avg_snr is not None and metrics.avg_snr <= thresholds.poor_snr_threshold:
        return True
    return False


def compute_health_score(thresholds: AlertThresholds, metrics: HealthMetrics) -> int:
    """
    Weighted 0-100 health score for dashboards and ranking.

    Starts at 100 and subtracts penalties for staleness, battery level,
    battery drain, poor signal and flapping. Alert triggers never read this.
    """
    score = 100

    age = metrics.age_minutes
    if age is None or age > thresholds.offline_minutes:
        score -= 60
    elif age > STALE_HOUR_MINUTES:
        score -= 35
    elif age > thresholds.stale_event_minutes:
        score -= 20

    if metrics.battery_pct is not None:
        if metrics.battery_pct <= 10:
            score -= 30
        elif metrics.battery_pct <= 20:
            score -= 15

    drain = metrics.battery_drain_per_day
    if drain is not None:
        if drain >= thresholds.battery_drain_high_per_day:
            score -= 25
        elif drain >= thresholds.battery_drain_medium_per_day:
            score -= 15
        elif drain >= thresholds.battery_drain_low_per_day:
            score -= 8

    if has_enough_signal_samples(thresholds, metrics) and signal_below_floor(thresholds, metrics):
        score -= 15

    half_max = thresholds.flapping_max_changes // 2
    if metrics.flap_changes >= thresholds.flapping_max_changes:
        score -= 20
    elif half_max > 0 and metrics.flap_changes >= half_max:
        score -= 10

    return max(0, min(100, score))
