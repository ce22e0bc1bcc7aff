"""M-Pesa STK push callback receiver."""

__version__ = "1.0.0"
