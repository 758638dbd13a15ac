# rider_app/__init__.py
"""
Клиент пассажира: жизненный цикл заказа поездки.
"""
