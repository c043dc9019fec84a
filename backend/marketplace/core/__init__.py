"""
Core package for shared configuration, logging, security and errors.
"""
