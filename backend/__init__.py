"""Booking core services"""
