# -*- coding: utf-8 -*-
# Copyright: (c) 2021, Jordan Borean (@jborean93) <jborean93@gmail.com>
# MIT License (see LICENSE or https://opensource.org/licenses/MIT)

from .client import (
    Client,
    ClientNTLM,
    ClientRequest,
    Transporter,
)

from .endpoint import (
    Endpoint,
)

from .exceptions import (
    AuthenticationError,
    CertificateVerificationError,
    ConfigurationError,
    WinRMError,
    WinRMHTTPError,
    WinRMTransportError,
)

from ._transport import (
    HTTPTransport,
    NTLMNegotiator,
    TransportConfig,
    environment_proxy,
    fixed_proxy,
)
