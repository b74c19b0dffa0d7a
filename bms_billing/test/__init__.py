"""Test package for the billing core"""
