from .thresholds import DEFAULT_THRESHOLDS, ThresholdEvaluator, default_threshold_config, severity_for

__all__ = ['DEFAULT_THRESHOLDS', 'ThresholdEvaluator', 'default_threshold_config', 'severity_for']
