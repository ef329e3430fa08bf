"""Sandboxer that runs containers with the quark runtime, and its file and mount helpers."""