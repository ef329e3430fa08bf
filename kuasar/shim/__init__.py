"""Shim data records and hybrid-vsock connection helpers."""