# -*- coding: utf-8 -*-
# Copyright: (c) 2021, Jordan Borean (@jborean93) <jborean93@gmail.com>
# MIT License (see LICENSE or https://opensource.org/licenses/MIT)

from ._config import (
    CertificateVerifier,
    Dialer,
    ProxyResolver,
    TransportConfig,
)

from ._connection import (
    HTTPTransport,
)

from ._negotiate import (
    NTLMNegotiator,
)

from ._proxy import (
    environment_proxy,
    fixed_proxy,
)
