"""
FastAPI routers, one module per area: book imports and their jobs, book
exports and taxonomy term files.
"""
