"""Docker etcd Registrator (DER).

Keeps an etcd service registry in step with the containers running on one
Docker host:
 - container start/die events are debounced into appeared/gone signals
 - each signal is projected into every configured registry backend
   (SkyDNS records, Vulcand backends/frontends)
 - a periodic full sync adds missing keys, removes stale ones and prunes
   directories left empty

Every key written carries this host's name, so several registrators can share
one etcd cluster without touching each other's entries.
"""
