# -*- coding: utf-8 -*-
"""Login second-step flow, method registry and the transport-facing service."""
