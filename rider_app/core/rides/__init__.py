# rider_app/core/rides/__init__.py
"""
Жизненный цикл заказа поездки.
"""
