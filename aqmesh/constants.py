"""Physical constants, unit conversions and numerical defaults.

Concentrations are carried in μg m⁻³ and emissions in μg s⁻¹ throughout the
package.  Nitrogen and sulfur species are tracked as the mass of the
element, so emitted masses are scaled by the molecular-weight ratios below
on the way in and scaled back on the way out.
"""
from __future__ import annotations

import math
from typing import Dict

SECONDS_PER_YEAR: float = 365.25 * 24 * 3600.0

# Mass conversions
KG_TO_UG: float = 1.0e9
SHORT_TON_TO_KG: float = 907.184740

# Accepted emission unit strings and their factor to μg s⁻¹
EMISSION_UNIT_FACTORS: Dict[str, float] = {
    "tons/year": SHORT_TON_TO_KG * KG_TO_UG / SECONDS_PER_YEAR,
    "kg/year": KG_TO_UG / SECONDS_PER_YEAR,
    "ug/s": 1.0,
    "μg/s": 1.0,
}

# Molecular weights (g mol^-1)
MW_N: float = 14.0067
MW_S: float = 32.0655
MW_NOX: float = 46.0055
MW_NO3: float = 62.00501
MW_NH3: float = 17.03056
MW_NH4: float = 18.03851
MW_SO2: float = 64.0644
MW_SO4: float = 96.0632

# Emitted pollutant names accepted on emission records
EMITTED_POLLUTANTS = ("VOC", "NOx", "NH3", "SOx", "PM25")

# Krewski et al. (2009): 6% increase in all-cause mortality per 10 μg m⁻³ PM2.5
KREWSKI_BETA: float = math.log(1.06) / 10.0
MORTALITY_RATE_SCALE: float = 1.0e5  # rates are deaths per 100,000 people per year

# Numerical defaults
DEFAULT_CFL_SAFETY: float = 1.0 / math.sqrt(3.0)
DEFAULT_CONVERGENCE_TOLERANCE: float = 0.005
DEFAULT_CHECK_INTERVAL_S: float = 3.0 * 3600.0
DEFAULT_CONSERVATION_RTOL: float = 1.0e-9
GEOMETRY_RTOL: float = 1.0e-9
