"""Camera Node Service: setpoint convergence, batch acquisition and frame streaming."""

__version__ = "1.0.0"
