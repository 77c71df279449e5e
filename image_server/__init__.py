"""
Image Server: on-demand image transformation and delivery

- /uri/{directives}/{mgid}: render an asset addressed by its content path
- /oid/{directives}/{mgid}: resolve a content item (arc) to its best-fitting
  image variant, then render it
- Three cache tiers: computed results and metadata in Redis, origin assets
  mirrored on local disk; remote fetches are guarded by a short-lived claim

Entry point:
    python -m image_server.server --config config/params.yaml
"""
from .renderer import RenderCoordinator

__all__ = ["RenderCoordinator"]
