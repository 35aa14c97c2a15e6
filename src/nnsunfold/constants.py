"""Physical constants and default settings used across nnsunfold."""

# Unit conversions for dose: [pSv/s] -> [mSv/h]
SECONDS_PER_HOUR = 3600
PSV_TO_MSV = 1e-9

# Empirical source-strength model, NCRP 151 pg. 42 (Eq. 2.16)
# Fraction of neutrons that penetrate the head shielding (average of 1 for Pb
# and 0.85 for W)
TRANSMISSION_FACTOR = 0.93
# Treatment room surface area [cm^2]; 6.26 m x 6.26 m x 6.26 m vault
ROOM_SURFACE_AREA = 2353374.529
# Distance from the bremsstrahlung target to the measurement point [cm]
SOURCE_DISTANCE = 100.0
# Monitor units to cGy at isocentre
MU_TO_GY = 100.0
SCATTER_COEFFICIENT = 5.4
THERMAL_COEFFICIENT = 1.26

# Iteration defaults
DEFAULT_CUTOFF = 1000
DEFAULT_TOLERANCE = 0.01
DEFAULT_N_MONTECARLO = 100
