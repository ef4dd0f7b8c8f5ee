"""
The CONTROLLER layer runs the import and reconcile stages on top of the model.
"""
