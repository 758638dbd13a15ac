# rider_app/core/geo/__init__.py
"""
Геоданные: расстояния, тарифы, геокодирование и позиция пассажира.
"""
