"""Application layer: ports, template cache, schema processing, binding and workflow use cases."""
