"""HTTP surface of the host: the drop-folder upload endpoint."""
