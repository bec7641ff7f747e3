"""
Peer location prediction replay configuration.
"""

# Prediction configuration (externally supplied per call)
PREDICTION_CONFIG = {
    "prediction_horizon_minutes": 5.0,    # how far ahead to project
    "min_history_entries": 3,             # fewer samples -> zero confidence
    "max_history_age_minutes": 30.0,      # samples older than this are ignored
}

# Engine configuration
ENGINE_CONFIG = {
    "model": "KALMAN_FILTER",             # LINEAR | KALMAN_FILTER | PARTICLE_FILTER
    "max_entries_per_peer": 100,          # history ring size
    "reprojection_interval_s": 30.0,      # periodic re-projection (live mode)
    "prune_on_reproject": True,
    "accuracy_history_size": 1000,
}

# Kalman filter tuning
KALMAN_CONFIG = {
    "initial_pos_std_m": 50.0,
    "initial_vel_std_m_s": 5.0,
    "default_accuracy_m": 25.0,           # used when a sample carries no accuracy
    "reanchor_distance_m": 5000.0,        # re-anchor local plane beyond this
    "position_gate_chi2": 9.21,           # 99% gate, 2 dof
    "velocity_gate_chi2": 5.99,           # 95% gate, 2 dof
    "confidence_ceiling_m": 1000.0,
}

# Particle filter tuning
PARTICLE_CONFIG = {
    "num_particles": 200,
    "resample_threshold": 0.5,            # resample when ESS < 0.5 N
    "degeneracy_ess_fraction": 0.01,      # ESS < 0.01 N is a collapse
    "default_accuracy_m": 25.0,
    "reanchor_distance_m": 5000.0,
    "confidence_ceiling_m": 1000.0,
}

# Output configuration
OUTPUT_CONFIG = {
    "enable_console_print": True,         # print predictions to the console
    "print_interval": 10,                 # print every N samples
    "print_cone": False,                  # include cone polygon in output
}

# Logging configuration
LOGGING_CONFIG = {
    "level": "INFO",
    "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
}

# Synthetic track configuration (for --simulate)
SIMULATION_CONFIG = {
    "base_lat": 22.2900,
    "base_lon": 114.1700,
    "peer_id": "sim-peer",
    "num_samples": 120,
    "interval_s": 10.0,
    "position_noise_m": 5.0,
    "profiles": {
        "walking": {"speed_mps": 1.4, "heading_deg": 45.0, "turn_deg_per_step": 2.0},
        "highway": {"speed_mps": 30.0, "heading_deg": 90.0, "turn_deg_per_step": 0.0},
    },
}
