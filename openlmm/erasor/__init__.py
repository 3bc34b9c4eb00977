"""ERASOR offline dynamic point removal: settings, bin comparison and server."""