"""
Form Manager module.

Templates own versioned field definitions; submissions are validated against the
active fields and may route through a multi-step approval workflow.
"""
