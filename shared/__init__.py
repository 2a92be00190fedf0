"""
Shared configuration, logging, models and storage for the price stream
"""
