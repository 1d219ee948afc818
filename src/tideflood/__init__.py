"""
Coastal Flood-Frequency Forecasting under Sea-Level Rise.

Models deviations between observed and astronomically predicted tides with a
seasonal + autoregressive model, simulates future tide records under SLR
offsets, and counts flood days. Also estimates SLR rates over single,
breakpoint and rolling windows. An exploratory and communication tool, not a
certified flood-risk model.
"""

__version__ = "0.1.0"
