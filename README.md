# dmailer

A small mail transport agent for hosts that only need to send mail. It
reads a message from standard input, keeps it in a spool directory and
delivers it: to a local mbox, or over SMTP to the recipient domain's MX
hosts or to a configured smarthost. Remote delivery supports STARTTLS and
SSL/TLS, certificate and SHA-256 fingerprint checking, and CRAM-MD5 and
LOGIN authentication.

## Installing

    pip install .

This installs two commands, `dmailer` and `dmailer-mbox-create`.

## Sending mail

`dmailer` takes sendmail-style options:

    dmailer someone@example.com < message.txt
    dmailer -t < message.txt          # take recipients from To:, Cc:, Bcc:
    dmailer -f sender@example.com someone@example.com < message.txt
    dmailer -bq someone@example.com < message.txt   # spool only, do not deliver
    dmailer -bp                       # show the queue
    dmailer -q                        # flush the queue

Other recognised options: `-r` (same as `-f`), `-i` and `-oi` (a line
holding a single `.` does not end the message), `-D` (do not go into the
background), `-L name` (log ident base). `-A`, `-B`, `-C`, `-d`, `-F`,
`-h`, `-N`, `-n`, `-O`, `-R`, `-U`, `-V`, `-v`, `-X` and other `-b`/`-o`
values are accepted and ignored. Recipients and queue operations
(`-bp`, `-q`) cannot be combined. When the program is started under the
name `mailq` it shows the queue; under the name `newaliases` it only reads
the configuration.

The envelope sender comes from `-f`/`-r`, then the `EMAIL` environment
variable, then the invoking user at the mail name of the host;
`MASQUERADE` overrides the user and/or host part. Missing `Date:`,
`Message-Id:` and `From:` headers are added, and `Bcc:` headers are
dropped.

Each recipient is delivered by its own process. A temporary failure is
retried with a back-off growing from 5 minutes to at most 3 hours;
`dmailer -q` touches the spool's `flush` file, which makes waiting
deliveries retry at once. Mail still undeliverable after five days, or
refused permanently, is bounced to the sender. Errors end the command with
a sysexits-style exit code and a message on standard error.

## Configuration

The configuration is read from `/etc/dma/dma.conf`; a missing file is not
an error. Each line is `KEY value` or a bare flag; `#` starts a comment.

Keys with a value: `SMARTHOST`, `PORT` (default 25), `ALIASES`,
`SPOOLDIR` (default `/var/spool/dma`), `AUTHPATH`, `CERTFILE`,
`MAILNAME` (a name, or an absolute path of a file holding it),
`MASQUERADE` (`user@host`, `user@` or `host`) and `FINGERPRINT`
(64 hex digits, the SHA-256 of the server certificate).

Flags: `STARTTLS`, `SECURETRANSFER`, `OPPORTUNISTIC_TLS`, `VERIFYCERT`,
`DEFER` (spool only), `INSECURE` (allow LOGIN without TLS), `FULLBOUNCE`
(bounce the whole message, not just its headers) and `NULLCLIENT` (send
everything to `SMARTHOST`, which it requires).

The authentication file named by `AUTHPATH` holds lines of the form

    user|smtp.example.com:password

## Local mailboxes

Local mail is appended to `/var/mail/<user>` in mbox format, under an
exclusive lock, with `From ` lines escaped. If the mbox cannot be opened,
the helper `/usr/local/lib/dma-mbox-create` is run once to create it.
`dmailer-mbox-create USER` does that job: it switches to the `mail` group
and creates or fixes `/var/mail/USER`, owned by the user and that group,
mode 0620. Install or link it at the helper path for local delivery to use
it.

## Library use

The parts can be used on their own:

    from dmailer.config import parse_conf
    from dmailer.crypto import hmac_md5, cram_md5_response
    from dmailer.net import parse_ehlo_response

    config = parse_conf("/etc/dma/dma.conf")
    digest = hmac_md5(b"challenge", b"secret")
    features = parse_ehlo_response("250-mail.example.com\r\n250 STARTTLS\r\n")

Modules: `config` (configuration and auth files), `util` (host names,
dates, locking, error types), `queue` (recipients, aliases, duplicates),
`spool` (queue and message files), `dns` (MX lookup with dnspython),
`crypto` (TLS context, fingerprints, CRAM-MD5), `net` (SMTP client and
remote delivery), `local` (mbox delivery), `mail` (reading submitted mail,
bounce messages), `mbox_create` and `agent` (the commands).

## What it does not do

- The aliases file named by `ALIASES` is not read. `Queue` expands aliases
  only from a mapping handed to it, and the `dmailer` command hands it an
  empty one, so `newaliases` builds nothing.
- `.forward` files are not read.
- Messages are logged through Python's `logging` logger `dmailer`; no
  syslog handler is set up.
- There is no SMTP server: mail is only accepted on standard input.