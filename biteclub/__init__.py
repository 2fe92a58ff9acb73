"""
                Bite Club Ordering Backend

Credit-based campus food ordering: order lifecycle and credit
settlement, restaurant promotions and loyalty rewards, and IVR
phone calls that let restaurants accept orders from the keypad.

Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
