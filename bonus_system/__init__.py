"""
Lambda функції бонусної системи
"""
