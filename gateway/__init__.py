"""
View Gateway - multi-tenant front door for on-demand view workloads

Responsibilities:
- View registry, rebuilt from labelled cluster objects on every start
- Spin up/down view workloads (Job + headless Service)
- Cold-start admission: hold a request until its view is ready
- Route requests by Host header to the view's endpoints
- Management API for declaring and deleting views
"""
