"""MobileTester admin CLI."""
